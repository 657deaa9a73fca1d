# -*- coding: utf-8 -*-
"""
Parser tolerante de SavedVariables (tablas Lua anidadas) para keystones.

El archivo lo escribe WoW, no nosotros: puede estar a medio escribir, truncado o traer
tablas que no nos importan. Por eso NO se decodifica el documento completo:
  1) el scanner ubica la tabla de interés ("keys", "myKeystones", ...),
  2) recorre sus entradas `clave = { ... }` una por una (brace matching),
  3) cada cuerpo se decodifica por separado con SLPP.
Una entrada mala se salta; una entrada truncada termina el recorrido sin perder las anteriores.

parse_keystones() nunca lanza excepción: en el peor caso devuelve [].
"""

import re
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import slpp

logger = logging.getLogger(__name__)

KEYS_TABLE = "keys"
BIGWIGS_TABLE = "myKeystones"

# Mayor prioridad primero: el addon propio pisa a BigWigs, BigWigs pisa a AlterEgo
SOURCE_PRIORITY: List[str] = ["addon", "bigwigs", "alterego"]

_WS_RE = re.compile(r"(?:\s+|--[^\n]*)+")
_IDENT_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_STRING_RE = re.compile(r'"((?:[^"\\\n]|\\.)*)"|\'((?:[^\'\\\n]|\\.)*)\'')
_ESCAPE_RE = re.compile(r"\\(.)")

_SLUG_WS_RE = re.compile(r"\s+")
_SLUG_INVALID_RE = re.compile(r"[^a-z0-9-]+")
_SLUG_DASHES_RE = re.compile(r"-{2,}")


def slugify(text: str) -> str:
    s = str(text or "").lower()
    s = _SLUG_WS_RE.sub("-", s)
    s = _SLUG_INVALID_RE.sub("", s)
    s = _SLUG_DASHES_RE.sub("-", s)
    return s.strip("-")


@dataclass
class KeystoneRecord:
    character_name: str
    realm_slug: str
    level: int
    dungeon_name: str
    is_from_bag: bool = True
    timestamp: Optional[int] = None
    source: str = "addon"
    map_id: Optional[int] = None

    @property
    def identity(self) -> Tuple[str, str]:
        return self.character_name, self.realm_slug

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "name": self.character_name,
            "realm": self.realm_slug,
            "level": int(self.level),
            "dungeon": self.dungeon_name,
            "timestamp": self.timestamp,
            "source": self.source,
            "isFromBag": bool(self.is_from_bag),
        }
        if self.map_id is not None:
            d["mapId"] = int(self.map_id)
        return d


class MalformedEntry(Exception):
    def __init__(self, pos: int, reason: str):
        super().__init__(f"{reason} (pos {pos})")
        self.pos = pos
        self.reason = reason


class LuaTableScanner:
    """
    Scanner mínimo sobre texto de tablas Lua.

    Solo entiende lo necesario para delimitar entradas: espacios y comentarios `--`,
    strings con escapes, claves `["x"]` / `[1]` / `x`, y llaves balanceadas.
    Los valores se decodifican afuera (SLPP).
    """

    def __init__(self, text: str):
        self.text = text or ""
        self.length = len(self.text)

    # -------------------------
    # Tokens básicos
    # -------------------------
    def skip_ws(self, pos: int) -> int:
        m = _WS_RE.match(self.text, pos)
        return m.end() if m else pos

    def read_string(self, pos: int) -> Tuple[str, int]:
        m = _STRING_RE.match(self.text, pos)
        if not m:
            raise MalformedEntry(pos, "string sin cerrar")
        raw = m.group(1) if m.group(1) is not None else m.group(2)
        return _ESCAPE_RE.sub(lambda e: {"n": "\n", "t": "\t"}.get(e.group(1), e.group(1)), raw), m.end()

    def read_key(self, pos: int) -> Tuple[str, int]:
        if pos >= self.length:
            raise MalformedEntry(pos, "fin de texto esperando clave")

        if self.text[pos] == "[":
            pos = self.skip_ws(pos + 1)
            if pos < self.length and self.text[pos] in "\"'":
                key, pos = self.read_string(pos)
            else:
                m = _NUMBER_RE.match(self.text, pos)
                if not m:
                    raise MalformedEntry(pos, "clave entre corchetes inválida")
                key, pos = m.group(0), m.end()
            pos = self.skip_ws(pos)
            if pos >= self.length or self.text[pos] != "]":
                raise MalformedEntry(pos, "falta ']'")
            return key, pos + 1

        m = _IDENT_RE.match(self.text, pos)
        if not m:
            raise MalformedEntry(pos, "clave inválida")
        return m.group(0), m.end()

    def match_table(self, pos: int) -> int:
        """
        `pos` apunta a '{'. Devuelve el índice justo después de la '}' que la cierra,
        o -1 si el texto termina antes (archivo truncado / a medio escribir).
        """
        depth = 0
        i = pos
        text = self.text
        while i < self.length:
            ch = text[i]
            if ch in "\"'":
                m = _STRING_RE.match(text, i)
                if not m:
                    return -1
                i = m.end()
                continue
            if ch == "-" and text.startswith("--", i):
                nl = text.find("\n", i)
                if nl == -1:
                    return -1
                i = nl + 1
                continue
            if ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return i + 1
            i += 1
        return -1

    def skip_scalar(self, pos: int) -> int:
        if pos < self.length and self.text[pos] in "\"'":
            try:
                return self.read_string(pos)[1]
            except MalformedEntry:
                pass
        while pos < self.length and self.text[pos] not in ",;}\n":
            pos += 1
        return pos

    def resync(self, pos: int) -> int:
        """
        Después de una entrada mala: avanzar hasta el próximo separador.
        Si antes aparece una tabla, se salta completa para no leer su contenido como entradas.
        """
        while pos < self.length:
            ch = self.text[pos]
            if ch == "{":
                end = self.match_table(pos)
                return self.length if end == -1 else end
            if ch in ",;\n":
                return pos + 1
            if ch == "}":
                return pos
            pos += 1
        return pos

    # -------------------------
    # Tablas
    # -------------------------
    def find_table(self, name: str, start: int = 0) -> Optional[int]:
        """
        Busca la primera asignación `["name"] = {` o `name = {` y devuelve la posición
        del '{' de apertura.
        """
        pattern = re.compile(r'\[\s*"' + re.escape(name) + r'"\s*\]|\b' + re.escape(name) + r"\b")
        for m in pattern.finditer(self.text, start):
            pos = self.skip_ws(m.end())
            if pos >= self.length or self.text[pos] != "=":
                continue
            pos = self.skip_ws(pos + 1)
            if pos < self.length and self.text[pos] == "{":
                return pos
        return None

    def iter_entries(self, table_pos: int) -> Iterator[Tuple[str, str]]:
        """
        Recorre la tabla que abre en `table_pos` y produce (clave, texto_de_tabla) por cada
        entrada cuyo valor es una tabla. Valores escalares se ignoran; entradas malformadas
        se saltan.
        """
        pos = table_pos + 1
        while True:
            pos = self.skip_ws(pos)
            if pos >= self.length:
                logger.debug("[Parser] Tabla sin cerrar (archivo truncado).")
                return
            ch = self.text[pos]
            if ch == "}":
                return
            if ch in ",;":
                pos += 1
                continue

            try:
                key, pos = self.read_key(pos)
                pos = self.skip_ws(pos)
                if pos >= self.length or self.text[pos] != "=":
                    raise MalformedEntry(pos, "falta '='")
                pos = self.skip_ws(pos + 1)
            except MalformedEntry as e:
                logger.debug(f"[Parser] Entrada malformada saltada: {e}")
                pos = self.resync(e.pos)
                continue

            if pos < self.length and self.text[pos] == "{":
                end = self.match_table(pos)
                if end == -1:
                    logger.debug(f"[Parser] Entrada '{key}' truncada; fin del recorrido.")
                    return
                yield key, self.text[pos:end]
                pos = end
            else:
                pos = self.skip_scalar(pos)

    def iter_tables_with_prefix(self, prefix: str) -> Iterator[Tuple[str, str]]:
        """
        Todas las tablas `["<prefix>..."] = { ... }` en cualquier nivel del documento.
        """
        pattern = re.compile(r'\[\s*"(' + re.escape(prefix) + r'[^"]*)"\s*\]\s*=\s*\{')
        pos = 0
        while True:
            m = pattern.search(self.text, pos)
            if not m:
                return
            open_pos = m.end() - 1
            end = self.match_table(open_pos)
            if end == -1:
                return
            yield m.group(1), self.text[open_pos:end]
            pos = end


# =========================
# Helpers de decodificación
# =========================
def _decode_table(body: str) -> Optional[Dict[str, Any]]:
    try:
        data = slpp.SLPP().decode(body)
    except Exception as e:
        logger.debug(f"[Parser] SLPP no pudo decodificar entrada: {e}")
        return None
    if not isinstance(data, dict):
        return None
    return data


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _find_field(obj: Any, key: str) -> Any:
    if isinstance(obj, dict):
        if key in obj:
            return obj[key]
        children = list(obj.values())
    elif isinstance(obj, list):
        children = obj
    else:
        return None
    for child in children:
        found = _find_field(child, key)
        if found is not None:
            return found
    return None


def split_character_key(key: str) -> Optional[Tuple[str, str]]:
    """
    "Name-Realm-Con-Guiones" -> ("name", "realm-con-guiones"). None si no hay nombre o reino.
    """
    if "-" not in key:
        return None
    name, raw_realm = key.split("-", 1)
    name = name.strip().lower()
    realm = slugify(raw_realm)
    if not name or not realm:
        return None
    return name, realm


# =========================
# Fuentes
# =========================
def parse_keystones(raw_text: str) -> List[KeystoneRecord]:
    """
    Keystones del addon propio (GuildManagerBridgeSync): tabla ["keys"] con entradas
    ["Name-Realm"] = { ["level"] = N, ["dungeonName"] = "..." }.
    """
    try:
        if not raw_text:
            return []

        scanner = LuaTableScanner(raw_text)
        table_pos = scanner.find_table(KEYS_TABLE)
        if table_pos is None:
            return []

        records: List[KeystoneRecord] = []
        for key, body in scanner.iter_entries(table_pos):
            ident = split_character_key(key)
            if not ident:
                logger.debug(f"[Parser] Clave sin formato Name-Realm: {key!r}")
                continue

            data = _decode_table(body)
            if data is None:
                continue

            level = _as_int(data.get("level"))
            dungeon = data.get("dungeonName")
            if level is None or level < 1 or not isinstance(dungeon, str) or not dungeon:
                logger.debug(f"[Parser] Entrada incompleta descartada: {key}")
                continue

            source = data.get("source")
            records.append(KeystoneRecord(
                character_name=ident[0],
                realm_slug=ident[1],
                level=level,
                dungeon_name=dungeon,
                timestamp=_as_int(data.get("timestamp")),
                source=source if isinstance(source, str) and source else "addon",
            ))
        return records
    except Exception as e:
        logger.warning(f"[Parser] Fallo inesperado parseando keys, se asume vacío: {e}")
        return []


def _map_record(name: Any, realm: Any, level: Any, map_id: Any, source: str) -> Optional[KeystoneRecord]:
    lvl = _as_int(level)
    mid = _as_int(map_id)
    if not isinstance(name, str) or not isinstance(realm, str):
        return None
    if lvl is None or mid is None or lvl <= 0 or mid <= 0:
        return None
    realm_slug = slugify(realm)
    if not name.strip() or not realm_slug:
        return None
    return KeystoneRecord(
        character_name=name.strip().lower(),
        realm_slug=realm_slug,
        level=lvl,
        dungeon_name=f"MapID:{mid}",
        source=source,
        map_id=mid,
    )


def parse_bigwigs(raw_text: str) -> List[KeystoneRecord]:
    try:
        scanner = LuaTableScanner(raw_text)
        table_pos = scanner.find_table(BIGWIGS_TABLE)
        if table_pos is None:
            return []

        records: List[KeystoneRecord] = []
        for key, body in scanner.iter_entries(table_pos):
            if not key.startswith("Player-"):
                continue
            data = _decode_table(body)
            if data is None:
                continue
            rec = _map_record(data.get("name"), data.get("realm"), data.get("keyLevel"), data.get("keyMap"), "bigwigs")
            if rec:
                records.append(rec)
        return records
    except Exception as e:
        logger.warning(f"[Parser] Fallo parseando BigWigs: {e}")
        return []


def parse_alterego(raw_text: str) -> List[KeystoneRecord]:
    try:
        scanner = LuaTableScanner(raw_text)
        records: List[KeystoneRecord] = []
        for _key, body in scanner.iter_tables_with_prefix("Player-"):
            data = _decode_table(body)
            if data is None:
                continue
            keystone = _find_field(data, "keystone")
            if not isinstance(keystone, dict):
                continue
            info = data.get("info") if isinstance(data.get("info"), dict) else data
            rec = _map_record(
                _find_field(info, "name"),
                _find_field(info, "realm"),
                keystone.get("level"),
                keystone.get("mapId"),
                "alterego",
            )
            if rec:
                records.append(rec)
        return records
    except Exception as e:
        logger.warning(f"[Parser] Fallo parseando AlterEgo: {e}")
        return []


PARSERS: Dict[str, Callable[[str], List[KeystoneRecord]]] = {
    "addon": parse_keystones,
    "bigwigs": parse_bigwigs,
    "alterego": parse_alterego,
}


def merge_by_priority(batches: Dict[str, List[KeystoneRecord]]) -> List[KeystoneRecord]:
    merged: Dict[Tuple[str, str], KeystoneRecord] = {}
    for source in reversed(SOURCE_PRIORITY):
        for rec in batches.get(source, []) or []:
            merged[rec.identity] = rec
    return list(merged.values())
