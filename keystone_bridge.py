#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Keystone Bridge - Versión 1.4
Puente entre los SavedVariables de WoW (keystones actuales) y el backend de la guild:
  POST /api/mythic/sync-addon

Principios:
- El archivo en disco es la fuente de verdad: si un envío falla, el próximo cambio lo corrige.
- Lectura completa en cada cambio (la tabla de keys puede encogerse).
- Fuentes: addon propio (GuildManagerBridgeSync) > BigWigs > AlterEgo, por personaje.
- Un archivo roto o un backend caído NUNCA detienen la vigilancia.
- Modo host: además levanta el servidor compañero (HOST_COMMAND).
"""

import os
import sys
import json
import asyncio
import logging
import subprocess
import threading
from datetime import datetime
from typing import Dict, List, Optional

import colorama
from colorama import Fore
from dotenv import load_dotenv

from file_watcher import WatcherRegistry
from savedvariables_parser import PARSERS, KeystoneRecord, merge_by_priority
from sync_client import ServerAck, SyncClient, SyncError, SyncLog, normalize_base_url
from wow_paths import KEYSTONE_FILES, account_saved_variables_dirs, resolve_wow_root, source_for_file

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))

colorama.init(autoreset=True)

logger = logging.getLogger(__name__)


# =========================
# Defaults (pueden override por .env)
# =========================
DEFAULT_BACKEND_URL = "http://localhost:3334"
DEFAULT_HTTP_TIMEOUT = 30
DEFAULT_FULL_SCAN_INTERVAL = 60
DEFAULT_PATH_RETRY_INTERVAL = 30.0
DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_SOURCES = "addon,bigwigs,alterego"
MODES = ("host", "client")

SYNC_LOG_FILENAME = "sync-debug.log"
BRIDGE_VERSION = "1.4"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"{Fore.YELLOW}{name}={raw!r} no es un entero. Uso {default}.")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{Fore.YELLOW}{name}={raw!r} no es un número. Uso {default}.")
        return default


class Config:
    def __init__(self):
        load_dotenv()

        raw_urls = os.getenv("BACKEND_URLS") or os.getenv("BACKEND_URL") or DEFAULT_BACKEND_URL
        self.backend_urls: List[str] = []
        for u in raw_urls.split(","):
            base = normalize_base_url(u)
            if base and base not in self.backend_urls:
                self.backend_urls.append(base)

        self.mode = (os.getenv("BRIDGE_MODE", "host") or "host").strip().lower()
        self.host_command = os.getenv("HOST_COMMAND", "").strip()

        raw_path = os.getenv("WOW_PATH", "").strip()
        self.wow_path = os.path.normpath(os.path.expandvars(raw_path)) if raw_path else ""

        self.sources = [
            s.strip().lower() for s in os.getenv("KEYSTONE_SOURCES", DEFAULT_SOURCES).split(",")
            if s.strip()
        ]

        self.http_timeout = _env_int("HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)
        self.sync_max_attempts = max(1, _env_int("SYNC_MAX_ATTEMPTS", 1))
        self.full_scan_interval = max(0, _env_int("FULL_SCAN_INTERVAL", DEFAULT_FULL_SCAN_INTERVAL))
        self.path_retry_interval = _env_float("PATH_RETRY_INTERVAL", DEFAULT_PATH_RETRY_INTERVAL)
        self.debounce_seconds = _env_float("DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS)

        raw_log = os.getenv("SYNC_LOG_FILE", SYNC_LOG_FILENAME).strip() or SYNC_LOG_FILENAME
        self.sync_log_path = raw_log if os.path.isabs(raw_log) else os.path.join(SCRIPT_DIR, raw_log)

        self._validate()

    def _validate(self):
        if self.mode not in MODES:
            raise ValueError(f"BRIDGE_MODE inválido: {self.mode!r} (usa 'host' o 'client').")

        if not self.backend_urls:
            raise ValueError("BACKEND_URL está vacío. Define la URL del backend en .env.")

        unknown = [s for s in self.sources if s not in KEYSTONE_FILES]
        if unknown:
            logger.warning(f"{Fore.YELLOW}Fuentes desconocidas ignoradas: {', '.join(unknown)}")
            self.sources = [s for s in self.sources if s in KEYSTONE_FILES]
        if not self.sources:
            raise ValueError("KEYSTONE_SOURCES no tiene ninguna fuente válida.")

        if self.wow_path and not os.path.isdir(self.wow_path):
            logger.warning(
                f"{Fore.YELLOW}AVISO: WOW_PATH no existe ({self.wow_path}). "
                f"Se probará igual junto con las rutas por defecto."
            )


class KeystoneBridge:
    def __init__(
        self,
        config: Config,
        sync_client: Optional[SyncClient] = None,
        registry: Optional[WatcherRegistry] = None,
    ):
        self.config = config
        self.sync_log = SyncLog(config.sync_log_path)
        self.sync_client = sync_client or SyncClient(
            config.backend_urls,
            sync_log=self.sync_log,
            timeout=config.http_timeout,
            max_attempts=config.sync_max_attempts,
        )
        self.registry = registry or WatcherRegistry(
            debounce_seconds=config.debounce_seconds,
            retry_interval=config.path_retry_interval,
        )
        self.health = {
            "last_sync_ok": None,
            "last_parse_ok": None,
            "last_latency_ms": None,
            "last_payload_size": None,
            "version": BRIDGE_VERSION,
        }
        self.wow_root: Optional[str] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._scan_task: Optional[asyncio.Task] = None
        self._host_proc: Optional[subprocess.Popen] = None

    # =========================
    # Loop principal
    # =========================
    async def run(self):
        logger.info(f"{Fore.GREEN}=== KEYSTONE BRIDGE V{BRIDGE_VERSION} (modo {self.config.mode}) ===")
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._start_host_companion()
        self._start_command_listener()

        try:
            self.wow_root = await self._wait_for_wow_root()
            if self.wow_root is None:
                return

            self.watch_accounts(self.wow_root)

            if self.config.full_scan_interval > 0:
                self._scan_task = self._loop.create_task(self._periodic_full_scan())

            await self._stop_event.wait()
        finally:
            self._shutdown()

    def stop(self):
        if self._stop_event is None or self._loop is None:
            return
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._stop_event.set)

    def request_full_scan(self, reason: str = "manual"):
        if self._loop is None or self._loop.is_closed():
            return
        logger.info(f"{Fore.CYAN}Se solicitó full-scan (motivo: {reason}).")
        self._loop.call_soon_threadsafe(lambda: self._loop.create_task(self.full_scan(reason)))

    def _start_command_listener(self):
        if not sys.stdin or not sys.stdin.isatty():
            return

        def _listen():
            while self._stop_event is not None and not self._stop_event.is_set():
                try:
                    line = input().strip().lower()
                except (EOFError, OSError):
                    break

                if line in ("full", "f", "scan", "full scan"):
                    self.request_full_scan("manual-cli")
                elif line in ("quit", "q", "exit"):
                    self.stop()
                    break

        threading.Thread(target=_listen, daemon=True).start()

    async def _wait_for_wow_root(self) -> Optional[str]:
        announced = False
        while not self._stop_event.is_set():
            root = resolve_wow_root(self.config.wow_path or None)
            if root and account_saved_variables_dirs(root):
                logger.info(f"Vigilando cuentas en: {os.path.join(root, 'WTF', 'Account')}")
                return root

            if not announced:
                if root:
                    logger.info(f"WoW encontrado en {root} pero sin cuentas en WTF/Account todavía.")
                else:
                    logger.info("WoW no encontrado.")
                announced = True
            logger.debug(f"Reintento de búsqueda en {self.config.path_retry_interval:.0f}s...")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.path_retry_interval)
            except asyncio.TimeoutError:
                pass
        return None

    def watch_accounts(self, wow_root: str) -> List[str]:
        watched: List[str] = []
        for sv_dir in account_saved_variables_dirs(wow_root):
            for source in self.config.sources:
                path = os.path.join(sv_dir, KEYSTONE_FILES[source])
                self.registry.watch(path, self.on_file_changed)
                watched.append(path)
        return watched

    async def _periodic_full_scan(self):
        # Atrapa /reload y logouts que el SO no reportó
        while True:
            await asyncio.sleep(self.config.full_scan_interval)
            try:
                await self.full_scan("periódico")
            except Exception as e:
                logger.error(f"Error ciclo full-scan: {e}", exc_info=True)

    def _shutdown(self):
        if self._scan_task is not None:
            self._scan_task.cancel()
            self._scan_task = None
        self.registry.stop()
        self._stop_host_companion()
        logger.info("Bridge detenido.")

    # =========================
    # Modo host
    # =========================
    def _start_host_companion(self):
        if self.config.mode != "host":
            logger.info("Modo client: no se inicia el servidor compañero.")
            return
        if not self.config.host_command:
            logger.info("Modo host sin HOST_COMMAND: no hay servidor compañero que iniciar.")
            return
        try:
            self._host_proc = subprocess.Popen(self.config.host_command, shell=True)
            logger.info(f"{Fore.GREEN}Servidor compañero iniciado (pid {self._host_proc.pid}): {self.config.host_command}")
        except OSError as e:
            logger.error(f"{Fore.RED}No pude iniciar el servidor compañero: {e}")
            self._host_proc = None

    def _stop_host_companion(self):
        proc = self._host_proc
        self._host_proc = None
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            proc.kill()

    # =========================
    # Procesamiento
    # =========================
    def _read_account_sources(self, sv_dir: str, overrides: Optional[Dict[str, str]] = None) -> Dict[str, List[KeystoneRecord]]:
        overrides = overrides or {}
        batches: Dict[str, List[KeystoneRecord]] = {}
        for source in self.config.sources:
            content = overrides.get(source)
            if content is None:
                path = os.path.join(sv_dir, KEYSTONE_FILES[source])
                if not os.path.isfile(path):
                    continue
                try:
                    with open(path, "r", encoding="utf-8", errors="replace") as f:
                        content = f.read()
                except OSError as e:
                    logger.warning(f"{Fore.YELLOW}No pude leer {path}: {e}")
                    continue
            batches[source] = PARSERS[source](content)
        return batches

    async def on_file_changed(self, path: str, content: str) -> Optional[ServerAck]:
        source = source_for_file(path) or "addon"
        sv_dir = os.path.dirname(path)

        batches = self._read_account_sources(sv_dir, overrides={source: content})
        records = merge_by_priority(batches)
        self.health["last_parse_ok"] = datetime.now().isoformat()

        counts = ", ".join(f"{s}={len(b)}" for s, b in batches.items())
        logger.info(f"{Fore.CYAN}¡Cambio detectado en {os.path.basename(path)}! {len(records)} keys ({counts})")
        self.sync_log.write(f"Archivo cambiado: {path} -> {len(records)} keys ({counts})")

        return await self.sync_records(records, reason=f"cambio {os.path.basename(path)}")

    async def full_scan(self, reason: str = "full-scan") -> List[KeystoneRecord]:
        if not self.wow_root:
            return []

        self.sync_log.write(f"--- Full-scan ({reason}) ---")
        all_keys: List[KeystoneRecord] = []
        for sv_dir in account_saved_variables_dirs(self.wow_root):
            batches = self._read_account_sources(sv_dir)
            merged = merge_by_priority(batches)
            counts = ", ".join(f"{s}={len(b)}" for s, b in batches.items())
            self.sync_log.write(f"Cuenta {os.path.basename(os.path.dirname(sv_dir))}: {counts}")
            all_keys.extend(merged)

        self.health["last_parse_ok"] = datetime.now().isoformat()
        await self.sync_records(all_keys, reason=reason)
        return all_keys

    async def sync_records(self, records: List[KeystoneRecord], reason: str = "") -> Optional[ServerAck]:
        try:
            self.health["last_payload_size"] = len(
                json.dumps({"keys": [r.to_dict() for r in records]}, ensure_ascii=False).encode("utf-8")
            )
            ack = await asyncio.to_thread(self.sync_client.send, records)
        except SyncError as e:
            logger.error(f"{Fore.RED}✘ Sync fallido ({reason}): {e}")
            return None
        finally:
            self._print_health_panel()

        self.health["last_sync_ok"] = datetime.now().isoformat()
        self.health["last_latency_ms"] = ack.latency_ms
        logger.info(f"{Fore.GREEN}✔ Sync OK ({reason}): {ack.message or ack.status}")
        return ack

    def _print_health_panel(self):
        panel = [
            "=== HEALTH PANEL ===",
            f"Último parse OK: {self.health.get('last_parse_ok') or 'pendiente'}",
            f"Último sync OK: {self.health.get('last_sync_ok') or 'pendiente'}",
            f"Latencia al server: {self.health.get('last_latency_ms') or 's/d'} ms",
            f"Tamaño payload: {self.health.get('last_payload_size') or 's/d'} bytes",
            f"Versión: {self.health.get('version')}",
        ]
        logger.info(" | ".join(panel))


def main() -> int:
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    try:
        bridge = KeystoneBridge(Config())
        asyncio.run(bridge.run())
    except KeyboardInterrupt:
        logger.info("Cerrando bridge por KeyboardInterrupt.")
    except Exception as e:
        logger.error(f"Fallo inicio: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
