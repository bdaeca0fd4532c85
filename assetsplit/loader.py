"""Lifecycle wrapper around an external document-conversion engine.

The engine itself is opaque: it is built by a factory from the URLs of its
runtime assets. The loader resolves the large assets through a
:class:`~assetsplit.reconstructor.Reconstructor` first, so the engine never
knows whether they were published in chunks.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Protocol

from .blobs import is_object_url
from .reconstructor import Reconstructor

logger = logging.getLogger(__name__)

DEFAULT_ASSET_PATH = "libreoffice-wasm/"
SOFFICE_JS = "soffice.js"
SOFFICE_WASM = "soffice.wasm.gz"
SOFFICE_DATA = "soffice.data.gz"
SOFFICE_WORKER_JS = "soffice.worker.js"
BROWSER_WORKER_JS = "browser.worker.global.js"


class EngineNotReadyError(RuntimeError):
    """Raised when the engine is used before initialization completed."""


class LoadPhase(str, Enum):
    """Coarse progress phases reported while the engine starts."""

    LOADING = "loading"
    INITIALIZING = "initializing"
    CONVERTING = "converting"
    COMPLETE = "complete"
    READY = "ready"


class EngineState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DESTROYED = "destroyed"


@dataclass(slots=True, frozen=True)
class LoadProgress:
    phase: LoadPhase
    percent: float
    message: str


ProgressCallback = Callable[[LoadProgress], None]


@dataclass(slots=True, frozen=True)
class EngineAssets:
    """URLs handed to the engine; the wasm and data entries may be ``blob:`` URLs."""

    soffice_js: str
    soffice_wasm: str
    soffice_data: str
    soffice_worker_js: str
    browser_worker_js: str


@dataclass(slots=True)
class ConversionResult:
    data: bytes
    mime_type: str


class ConversionEngine(Protocol):
    async def initialize(self) -> None:
        ...

    async def convert(
        self,
        data: bytes,
        *,
        output_format: str,
        input_format: str,
        file_name: str,
    ) -> ConversionResult:
        ...

    async def destroy(self) -> None:
        ...


EngineFactory = Callable[[EngineAssets, ProgressCallback], ConversionEngine]


class EngineLoader:
    """Own one conversion engine instance from construction to teardown."""

    def __init__(
        self,
        engine_factory: EngineFactory,
        reconstructor: Reconstructor,
        *,
        base_path: str = DEFAULT_ASSET_PATH,
    ) -> None:
        self._factory = engine_factory
        self._reconstructor = reconstructor
        self.base_path = base_path
        self._engine: ConversionEngine | None = None
        self._state = EngineState.UNINITIALIZED
        self._ready: asyncio.Event | None = None
        self._init_error: BaseException | None = None
        self._object_urls: list[str] = []
        self._assets: EngineAssets | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def assets(self) -> EngineAssets | None:
        return self._assets

    def is_ready(self) -> bool:
        return self._state is EngineState.READY and self._engine is not None

    async def initialize(self, on_progress: ProgressCallback | None = None) -> None:
        """Start the engine once; concurrent callers wait for the same attempt."""
        if self._state is EngineState.READY:
            return
        if self._state is EngineState.DESTROYED:
            raise EngineNotReadyError("Engine loader has been destroyed")
        if self._state is EngineState.INITIALIZING and self._ready is not None:
            await self._ready.wait()
            if self._state is not EngineState.READY:
                raise EngineNotReadyError("Engine initialization failed") from self._init_error
            return

        self._state = EngineState.INITIALIZING
        self._init_error = None
        ready = self._ready = asyncio.Event()
        try:
            engine = await self._start_engine(on_progress)
        except BaseException as exc:
            self._init_error = exc
            if self._state is not EngineState.DESTROYED:
                self._state = EngineState.UNINITIALIZED
            self._release_object_urls()
            ready.set()
            raise

        if self._state is EngineState.DESTROYED:
            # destroy() ran while the engine was starting.
            error = self._init_error = EngineNotReadyError("Engine loader was destroyed during initialization")
            try:
                await engine.destroy()
            finally:
                self._release_object_urls()
                ready.set()
            raise error

        self._engine = engine
        self._state = EngineState.READY
        ready.set()
        _emit(on_progress, LoadPhase.READY, 100, "Conversion engine ready!")
        logger.info("Conversion engine ready")

    async def _start_engine(self, on_progress: ProgressCallback | None) -> ConversionEngine:
        _emit(on_progress, LoadPhase.LOADING, 0, "Loading conversion engine...")

        wasm_url, data_url = await asyncio.gather(
            self._reconstructor.resolve(self.base_path, SOFFICE_WASM),
            self._reconstructor.resolve(self.base_path, SOFFICE_DATA),
        )
        self._object_urls = [url for url in (wasm_url, data_url) if is_object_url(url)]

        assets = EngineAssets(
            soffice_js=f"{self.base_path}{SOFFICE_JS}",
            soffice_wasm=wasm_url,
            soffice_data=data_url,
            soffice_worker_js=f"{self.base_path}{SOFFICE_WORKER_JS}",
            browser_worker_js=f"{self.base_path}{BROWSER_WORKER_JS}",
        )
        self._assets = assets

        def forward(info: LoadProgress) -> None:
            # Engines may keep reporting after startup; only relay until ready.
            if self._state is EngineState.READY:
                return
            _emit(
                on_progress,
                _coerce_phase(info.phase),
                info.percent,
                f"Loading conversion engine ({round(info.percent)}%)...",
            )

        engine = self._factory(assets, forward)
        await engine.initialize()
        return engine

    async def open_resource(self, url: str) -> bytes:
        """Read an engine asset, whether it was reassembled or served directly."""
        return await self._reconstructor.read(url)

    async def convert_to_pdf(self, data: bytes, file_name: str) -> ConversionResult:
        engine = self._require_engine()
        input_format = Path(file_name).suffix.lstrip(".").lower()
        logger.info("Converting %s to PDF (%s, %d bytes)", file_name, input_format or "unknown", len(data))

        start = time.perf_counter()
        try:
            result = await engine.convert(
                data,
                output_format="pdf",
                input_format=input_format,
                file_name=file_name,
            )
        except Exception:
            logger.error("Conversion failed for %s", file_name, exc_info=True)
            raise

        logger.info(
            "Conversion complete in %.0f ms (%d bytes)",
            (time.perf_counter() - start) * 1000,
            len(result.data),
        )
        return result

    async def word_to_pdf(self, data: bytes, file_name: str) -> ConversionResult:
        return await self.convert_to_pdf(data, file_name)

    async def ppt_to_pdf(self, data: bytes, file_name: str) -> ConversionResult:
        return await self.convert_to_pdf(data, file_name)

    async def excel_to_pdf(self, data: bytes, file_name: str) -> ConversionResult:
        return await self.convert_to_pdf(data, file_name)

    async def destroy(self) -> None:
        """Tear down the engine and release reassembled buffers."""
        engine, self._engine = self._engine, None
        try:
            if engine is not None:
                await engine.destroy()
        finally:
            self._release_object_urls()
            self._state = EngineState.DESTROYED

    def _require_engine(self) -> ConversionEngine:
        if self._state is not EngineState.READY or self._engine is None:
            raise EngineNotReadyError("Converter not initialized")
        return self._engine

    def _release_object_urls(self) -> None:
        registry = self._reconstructor.registry
        for url in self._object_urls:
            registry.revoke_object_url(url)
        self._object_urls = []


def _coerce_phase(phase: object) -> LoadPhase:
    try:
        return LoadPhase(phase)
    except ValueError:
        logger.debug("Unknown engine progress phase %r, reporting as initializing", phase)
        return LoadPhase.INITIALIZING


def _emit(callback: ProgressCallback | None, phase: LoadPhase, percent: float, message: str) -> None:
    if callback is not None:
        callback(LoadProgress(phase=phase, percent=percent, message=message))
