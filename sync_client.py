# -*- coding: utf-8 -*-
"""
Envío de keystones al backend (POST /api/mythic/sync-addon) + log durable de resultados.

- Un send() = un lote. No se acumula entre llamadas.
- Fallo de red / HTTP -> SyncError. Sin reintento automático por defecto: el archivo vigilado
  sigue en disco y el próximo cambio (o reinicio) vuelve a intentar.
- Todo resultado (ok o error) queda en SyncLog, un .log de texto append-only.
"""

import os
import json
import time
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import requests
from colorama import Fore

from savedvariables_parser import KeystoneRecord

logger = logging.getLogger(__name__)

SYNC_PATH = "/api/mythic/sync-addon"
DEFAULT_HTTP_TIMEOUT = 30
MAX_BACKOFF = 20.0


def normalize_base_url(raw: str) -> str:
    """
    Acepta:
      - http://host:3334
      - http://host:3334/
      - http://host:3334/api
      - http://host:3334/api/mythic/sync-addon
    Devuelve SIEMPRE la base (sin /api...), el path fijo lo agrega SyncClient.
    """
    s = (raw or "").strip().rstrip("/")
    if s.endswith(SYNC_PATH):
        s = s[: -len(SYNC_PATH)]
    if s.endswith("/api"):
        s = s[: -len("/api")]
    return s.rstrip("/")


class SyncLog:
    """
    Log de diagnóstico append-only. Nunca se lee de vuelta.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _ensure_dir(self):
        base = os.path.dirname(self.path)
        if base and not os.path.isdir(base):
            os.makedirs(base, exist_ok=True)

    def write(self, message: str, level: str = "INFO"):
        line = f"[{time.strftime('%Y-%m-%d %H:%M:%S')}] [{level}] {message}\n"
        try:
            with self._lock:
                self._ensure_dir()
                with open(self.path, "a", encoding="utf-8", errors="replace") as f:
                    f.write(line)
        except OSError as e:
            logger.warning(f"No pude escribir en el log de sync ({self.path}): {e}")


class SyncError(Exception):
    def __init__(self, url: str, detail: str, status: Optional[int] = None):
        super().__init__(f"{url}: {detail}" if status is None else f"{url}: HTTP {status} {detail}")
        self.url = url
        self.status = status
        self.detail = detail


@dataclass
class ServerAck:
    url: str
    status: int
    message: str = ""
    latency_ms: int = 0
    body: Dict[str, Any] = field(default_factory=dict)


def summarize_records(records: Sequence[KeystoneRecord], limit: int = 10) -> str:
    if not records:
        return "sin keys"
    parts = [f"{r.character_name}-{r.realm_slug} +{r.level}" for r in records[:limit]]
    if len(records) > limit:
        parts.append(f"... (+{len(records) - limit})")
    return ", ".join(parts)


class SyncClient:
    def __init__(
        self,
        base_urls: Iterable[str],
        sync_log: Optional[SyncLog] = None,
        timeout: int = DEFAULT_HTTP_TIMEOUT,
        max_attempts: int = 1,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        self.base_urls: List[str] = [normalize_base_url(u) for u in base_urls if normalize_base_url(u)]
        if not self.base_urls:
            raise ValueError("SyncClient necesita al menos una URL de backend.")
        self.sync_log = sync_log
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self._sleep = sleep

        self._session = session or requests.Session()
        # Un POST a la vez sobre la sesión compartida
        self._session_lock = threading.Lock()
        self._session.headers.update({"Content-Type": "application/json"})

    def endpoints(self) -> List[str]:
        return [f"{base}{SYNC_PATH}" for base in self.base_urls]

    def _log(self, message: str, level: str = "INFO"):
        if self.sync_log is not None:
            self.sync_log.write(message, level=level)

    def send(self, records: Sequence[KeystoneRecord]) -> ServerAck:
        """
        Un POST por URL candidata, en orden, hasta el primer 2xx. Lanza SyncError con el último fallo.
        """
        payload = {"keys": [r.to_dict() for r in records]}
        summary = summarize_records(records)
        last_error: Optional[SyncError] = None

        for url in self.endpoints():
            self._log(f"Enviando {len(records)} keys a {url} ({summary})")
            try:
                ack = self._post_with_retry(url, payload)
            except SyncError as e:
                last_error = e
                self._log(f"Upload fallido a {url}: {e} | payload: {summary}", level="ERROR")
                logger.warning(f"{Fore.YELLOW}Sync falló en {url}: {e}")
                continue

            self._log(f"Respuesta del backend ({ack.status}, {ack.latency_ms} ms): {json.dumps(ack.body, ensure_ascii=False)}")
            return ack

        if last_error is None:
            raise SyncError(", ".join(self.base_urls), "sin endpoints configurados")
        raise last_error

    def _post_with_retry(self, url: str, payload: Dict[str, Any]) -> ServerAck:
        backoff = 1.0
        attempt = 0

        while True:
            attempt += 1
            try:
                return self._post_once(url, payload, attempt)
            except SyncError as e:
                # 4xx es definitivo; transporte y 5xx se pueden reintentar
                retryable = e.status is None or e.status >= 500
                if not retryable or attempt >= self.max_attempts:
                    raise
                logger.warning(f"{Fore.YELLOW}Intento {attempt} falló ({e}). Backoff {backoff:.1f}s")
                self._sleep(backoff)
                backoff = min(MAX_BACKOFF, backoff * 1.6)

    def _post_once(self, url: str, payload: Dict[str, Any], attempt: int) -> ServerAck:
        start = time.time()
        try:
            with self._session_lock:
                resp = self._session.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise SyncError(url, str(e)) from e

        elapsed_ms = int((time.time() - start) * 1000)
        logger.debug(f"[HTTP] POST attempt {attempt} -> {url} | status={resp.status_code} | ms={elapsed_ms}")

        try:
            body = resp.json()
        except ValueError:
            body = {"raw": (resp.text or "")[:400]}
        if not isinstance(body, dict):
            body = {"data": body}

        if not (200 <= resp.status_code < 300):
            detail = body.get("error") or body.get("message") or body.get("raw") or ""
            raise SyncError(url, str(detail), status=resp.status_code)

        return ServerAck(
            url=url,
            status=resp.status_code,
            message=str(body.get("message", "") or ""),
            latency_ms=elapsed_ms,
            body=body,
        )
