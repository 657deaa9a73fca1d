# -*- coding: utf-8 -*-
"""
Localización del árbol de datos de World of Warcraft.

- resolve_wow_root(): primer candidato existente (override primero, luego rutas típicas).
- account_saved_variables_dirs(): carpetas WTF/Account/<cuenta>/SavedVariables.

No encontrar WoW es un resultado normal (puede no estar instalado): se devuelve None.
"""

import os
import ntpath
import logging
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

RETAIL_LEAF = "_retail_"

# Fuente -> archivo SavedVariables
KEYSTONE_FILES: Dict[str, str] = {
    "addon": "GuildManagerBridgeSync.lua",
    "bigwigs": "BigWigs.lua",
    "alterego": "AlterEgo.lua",
}


def _with_leaf(path: str) -> str:
    p = os.path.normpath(os.path.expandvars(os.path.expanduser(path)))
    if os.path.basename(p).lower() == RETAIL_LEAF:
        return p
    return os.path.join(p, RETAIL_LEAF)


def default_install_roots() -> List[str]:
    roots: List[str] = []

    def _add_base(base_root: str):
        if base_root and base_root not in roots:
            roots.append(base_root)

    if os.name == "nt":
        _add_base(os.path.join("E:\\", "World of Warcraft"))
        _add_base(os.path.join("C:\\", "Program Files (x86)", "World of Warcraft"))
        _add_base(os.path.join("C:\\", "Program Files", "World of Warcraft"))
        _add_base(os.path.join("D:\\", "Games", "World of Warcraft"))

    home = os.path.expanduser("~")
    _add_base(os.path.join(home, "Documents", "World of Warcraft"))
    _add_base(os.path.join(home, "World of Warcraft"))

    if os.name == "nt":
        program_files = os.getenv("PROGRAMFILES", os.path.join("C:\\", "Program Files"))
        program_files_x86 = os.getenv("PROGRAMFILES(X86)", os.path.join("C:\\", "Program Files (x86)"))
        _add_base(os.path.join(program_files, "World of Warcraft"))
        _add_base(os.path.join(program_files_x86, "World of Warcraft"))

    return roots


def candidate_paths(override: Optional[str] = None) -> List[str]:
    candidates: List[str] = []
    bases = ([override] if override else []) + default_install_roots()
    for base in bases:
        p = _with_leaf(base)
        if p not in candidates:
            candidates.append(p)
    return candidates


def resolve_wow_root(override: Optional[str] = None) -> Optional[str]:
    """
    Devuelve la carpeta _retail_ del primer candidato existente, o None.
    """
    for p in candidate_paths(override):
        exists = os.path.isdir(p)
        logger.debug(f"[WoWPath] Revisando {p}: {exists}")
        if exists:
            logger.info(f"[WoWPath] Encontrado: {p}")
            return p
    return None


def account_saved_variables_dirs(wow_root: str) -> List[str]:
    account_root = os.path.join(wow_root, "WTF", "Account")
    if not os.path.isdir(account_root):
        return []

    try:
        accounts = sorted(os.listdir(account_root))
    except OSError as e:
        logger.warning(f"No pude listar cuentas en {account_root}: {e}")
        return []

    out: List[str] = []
    for account in accounts:
        # WTF/Account/SavedVariables es la carpeta global, no una cuenta
        if account == "SavedVariables":
            continue
        sv_dir = os.path.join(account_root, account, "SavedVariables")
        if os.path.isdir(sv_dir):
            out.append(sv_dir)
    return out


def source_for_file(path: str) -> Optional[str]:
    # ntpath separa por "\\" y "/"; normcase en Windows deja la ruta en minúsculas
    name = ntpath.basename(path).lower()
    for source, file_name in KEYSTONE_FILES.items():
        if file_name.lower() == name:
            return source
    return None
