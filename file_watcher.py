# -*- coding: utf-8 -*-
"""
Vigilancia de archivos SavedVariables.

Cada archivo tiene su propio WatchHandle (una tarea asyncio) con la máquina de estados:
    IDLE -> PENDING (evento del SO) -> DEBOUNCING (ventana ~1s) -> IDLE
    PENDING -> IDLE directo si el archivo desapareció.

Tras la ventana de debounce el archivo se lee COMPLETO (la tabla puede encogerse, p.ej. una
key usada desaparece) y se entrega al callback. Los eventos del SO llegan por watchdog en su
propio hilo y se reenvían al loop con call_soon_threadsafe.
"""

import os
import asyncio
import inspect
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from colorama import Fore
from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0
DEFAULT_RETRY_INTERVAL = 30.0

# Eventos "opened"/"closed_no_write" se ignoran: nuestra propia lectura los genera
_RELEVANT_EVENTS = {EVENT_TYPE_CREATED, EVENT_TYPE_DELETED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED}

OnChange = Callable[[str, str], Union[None, Awaitable[None]]]


def _norm(path: str) -> str:
    return os.path.normcase(os.path.abspath(os.fsdecode(path)))


class WatchState:
    IDLE = "idle"
    PENDING = "pending"
    DEBOUNCING = "debouncing"


class _ForwardingHandler(FileSystemEventHandler):
    def __init__(self, registry: "WatcherRegistry"):
        super().__init__()
        self._registry = registry

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in _RELEVANT_EVENTS:
            return
        for p in (event.src_path, getattr(event, "dest_path", None)):
            if p:
                self._registry._dispatch(_norm(p))


class WatchHandle:
    def __init__(
        self,
        path: str,
        on_change: OnChange,
        registry: "WatcherRegistry",
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        self.path = path
        self.on_change = on_change
        self.debounce_seconds = debounce_seconds
        self.retry_interval = retry_interval
        self.state = WatchState.IDLE
        # Último tamaño conocido (posición leída)
        self.position = 0
        self._registry = registry
        self._event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # -------------------------
    # Control
    # -------------------------
    def start(self):
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self):
        """Evento de modificación (se llama dentro del loop)."""
        self._event.set()

    # -------------------------
    # Estado de lectura
    # -------------------------
    def refresh_position(self, size: int) -> bool:
        """
        Si el archivo se achicó respecto a lo leído, fue truncado o recreado: volver a 0.
        """
        if size < self.position:
            logger.info(f"{Fore.CYAN}Archivo truncado/recreado ({self.position} -> {size} bytes): {self.path}")
            self.position = 0
            return True
        return False

    def read_full(self) -> Optional[str]:
        try:
            self.refresh_position(os.path.getsize(self.path))
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                content = f.read()
                self.position = os.fstat(f.fileno()).st_size
            return content
        except OSError as e:
            logger.warning(f"{Fore.YELLOW}No pude leer {self.path}: {e}")
            return None

    # -------------------------
    # Loop
    # -------------------------
    async def _run(self):
        try:
            await self._wait_until_exists()
            # Lectura inicial sin esperar el primer evento
            await self._emit()

            while True:
                await self._event.wait()
                self._event.clear()
                self.state = WatchState.PENDING

                if not os.path.isfile(self.path):
                    logger.debug(f"Archivo desaparecido, vuelvo a espera: {self.path}")
                    self.state = WatchState.IDLE
                    continue

                self.state = WatchState.DEBOUNCING
                await self._debounce()

                if os.path.isfile(self.path):
                    await self._emit()
                self.state = WatchState.IDLE
        finally:
            self.state = WatchState.IDLE

    async def _wait_until_exists(self):
        directory = os.path.dirname(self.path)
        announced = False
        while True:
            if os.path.isdir(directory) and self._registry._schedule_dir(directory) and os.path.isfile(self.path):
                return
            if not announced:
                logger.info(f"Esperando a que exista {self.path} (reintento cada {self.retry_interval:.0f}s)")
                announced = True
            self._event.clear()
            try:
                await asyncio.wait_for(self._event.wait(), timeout=self.retry_interval)
            except asyncio.TimeoutError:
                pass

    async def _debounce(self):
        # Cada evento dentro de la ventana la reinicia
        while True:
            self._event.clear()
            try:
                await asyncio.wait_for(self._event.wait(), timeout=self.debounce_seconds)
            except asyncio.TimeoutError:
                return

    async def _emit(self):
        content = self.read_full()
        if content is None:
            return
        try:
            result = self.on_change(self.path, content)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{Fore.RED}Error procesando cambio de {self.path}: {e}", exc_info=True)


class WatcherRegistry:
    """
    Dueño de los WatchHandle y del observer de watchdog. Sin singletons: cada bridge crea el suyo.
    """

    def __init__(
        self,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        observer: Any = None,
    ):
        self.debounce_seconds = debounce_seconds
        self.retry_interval = retry_interval
        self._observer = observer if observer is not None else Observer()
        self._observer_started = False
        self._event_handler = _ForwardingHandler(self)
        self._handles: Dict[str, WatchHandle] = {}
        self._dir_watches: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def watch(self, path: str, on_change: OnChange) -> WatchHandle:
        """Debe llamarse desde el loop asyncio."""
        self._loop = asyncio.get_running_loop()
        key = _norm(path)
        with self._lock:
            existing = self._handles.get(key)
            if existing is not None and existing.running:
                return existing
            handle = WatchHandle(
                os.path.abspath(os.fsdecode(path)),
                on_change,
                self,
                debounce_seconds=self.debounce_seconds,
                retry_interval=self.retry_interval,
            )
            self._handles[key] = handle
        logger.info(f"Vigilando: {key}")
        handle.start()
        return handle

    def unwatch(self, path: str) -> bool:
        with self._lock:
            handle = self._handles.pop(_norm(path), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def paths(self) -> List[str]:
        with self._lock:
            return list(self._handles.keys())

    def get(self, path: str) -> Optional[WatchHandle]:
        with self._lock:
            return self._handles.get(_norm(path))

    def stop(self):
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for h in handles:
            h.cancel()
        for watch in list(self._dir_watches.values()):
            try:
                self._observer.unschedule(watch)
            except Exception as e:
                logger.debug(f"unschedule falló: {e}")
        self._dir_watches.clear()
        if self._observer_started:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer_started = False

    # -------------------------
    # Observer (hilo de watchdog)
    # -------------------------
    def _schedule_dir(self, directory: str) -> bool:
        key = _norm(directory)
        if key in self._dir_watches:
            return True
        try:
            self._dir_watches[key] = self._observer.schedule(self._event_handler, key, recursive=False)
            if not self._observer_started:
                self._observer.start()
                self._observer_started = True
            return True
        except OSError as e:
            logger.warning(f"{Fore.YELLOW}No pude vigilar {key}: {e}")
            return False

    def _dispatch(self, path: str):
        with self._lock:
            handle = self._handles.get(path)
        if handle is None or self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(handle.notify)
