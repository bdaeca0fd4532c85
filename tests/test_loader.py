from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from assetsplit.blobs import BlobRegistry, is_object_url
from assetsplit.loader import (
    ConversionResult,
    EngineAssets,
    EngineLoader,
    EngineNotReadyError,
    EngineState,
    LoadPhase,
    LoadProgress,
    ProgressCallback,
)
from assetsplit.reconstructor import Reconstructor

SITE_URL = "http://site.test/"


class FakeEngine:
    def __init__(self, assets: EngineAssets, on_progress: ProgressCallback) -> None:
        self.assets = assets
        self.on_progress = on_progress
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None
        self.converted: list[dict[str, object]] = []
        self.destroyed = False
        self.phase: object = LoadPhase.INITIALIZING

    async def initialize(self) -> None:
        self.on_progress(LoadProgress(self.phase, 50, "engine booting"))  # type: ignore[arg-type]
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def convert(self, data: bytes, *, output_format: str, input_format: str, file_name: str) -> ConversionResult:
        self.converted.append(
            {"data": data, "output_format": output_format, "input_format": input_format, "file_name": file_name}
        )
        return ConversionResult(data=b"%PDF-" + data, mime_type="application/pdf")

    async def destroy(self) -> None:
        self.destroyed = True


class EngineFactory:
    def __init__(self) -> None:
        self.engines: list[FakeEngine] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: Exception | None = None
        self.phase: object = LoadPhase.INITIALIZING

    def __call__(self, assets: EngineAssets, on_progress: ProgressCallback) -> FakeEngine:
        engine = FakeEngine(assets, on_progress)
        engine.gate = self.gate
        engine.fail_with = self.fail_with
        engine.phase = self.phase
        self.engines.append(engine)
        return engine


def _client(files: dict[str, bytes]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        content = files.get(request.url.path)
        if content is None:
            return httpx.Response(404)
        return httpx.Response(200, content=content)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _split_wasm_site() -> dict[str, bytes]:
    return {
        "/chunks-manifest.json": json.dumps({"libreoffice-wasm/soffice.wasm.gz": 2}).encode(),
        "/libreoffice-wasm/soffice.wasm.gz.part1": b"wasm-",
        "/libreoffice-wasm/soffice.wasm.gz.part2": b"binary",
        "/libreoffice-wasm/soffice.data.gz": b"data segment",
    }


@pytest.mark.asyncio
async def test_initialize_passes_resolved_urls_to_engine() -> None:
    factory = EngineFactory()
    registry = BlobRegistry()
    progress: list[LoadProgress] = []

    async with _client(_split_wasm_site()) as client:
        loader = EngineLoader(factory, Reconstructor(client, registry, site_url=SITE_URL))
        await loader.initialize(progress.append)

        assets = factory.engines[0].assets
        assert is_object_url(assets.soffice_wasm)
        assert await loader.open_resource(assets.soffice_wasm) == b"wasm-binary"
        assert assets.soffice_data == "libreoffice-wasm/soffice.data.gz"
        assert await loader.open_resource(assets.soffice_data) == b"data segment"

    assert assets.soffice_js == "libreoffice-wasm/soffice.js"
    assert assets.soffice_worker_js == "libreoffice-wasm/soffice.worker.js"
    assert assets.browser_worker_js == "libreoffice-wasm/browser.worker.global.js"
    assert loader.assets == assets
    assert loader.is_ready()
    assert loader.state is EngineState.READY
    assert [item.phase for item in progress] == [LoadPhase.LOADING, LoadPhase.INITIALIZING, LoadPhase.READY]
    assert progress[1].message == "Loading conversion engine (50%)..."
    assert progress[-1].percent == 100


@pytest.mark.asyncio
async def test_progress_after_ready_is_not_forwarded() -> None:
    factory = EngineFactory()
    progress: list[LoadProgress] = []

    async with _client({}) as client:
        loader = EngineLoader(factory, Reconstructor(client, BlobRegistry(), site_url=SITE_URL))
        await loader.initialize(progress.append)

    factory.engines[0].on_progress(LoadProgress(LoadPhase.CONVERTING, 10, "late"))

    assert progress[-1].phase is LoadPhase.READY


@pytest.mark.asyncio
async def test_concurrent_initialize_builds_one_engine() -> None:
    factory = EngineFactory()
    factory.gate = asyncio.Event()

    async with _client({}) as client:
        loader = EngineLoader(factory, Reconstructor(client, BlobRegistry(), site_url=SITE_URL))
        first = asyncio.create_task(loader.initialize())
        second = asyncio.create_task(loader.initialize())
        while not factory.engines:
            await asyncio.sleep(0)
        assert loader.state is EngineState.INITIALIZING
        factory.gate.set()
        await asyncio.gather(first, second)

    assert len(factory.engines) == 1
    assert loader.is_ready()


@pytest.mark.asyncio
async def test_failed_initialize_is_reported_to_waiters_and_can_retry() -> None:
    factory = EngineFactory()
    factory.gate = asyncio.Event()
    factory.fail_with = RuntimeError("engine crashed")
    registry = BlobRegistry()

    async with _client(_split_wasm_site()) as client:
        loader = EngineLoader(factory, Reconstructor(client, registry, site_url=SITE_URL))
        first = asyncio.create_task(loader.initialize())
        second = asyncio.create_task(loader.initialize())
        while not factory.engines:
            await asyncio.sleep(0)
        factory.gate.set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        assert isinstance(results[0], RuntimeError)
        assert isinstance(results[1], EngineNotReadyError)
        assert loader.state is EngineState.UNINITIALIZED
        assert len(registry) == 0

        factory.gate = None
        factory.fail_with = None
        await loader.initialize()

    assert loader.is_ready()
    assert len(factory.engines) == 2


@pytest.mark.asyncio
async def test_convert_uses_extension_as_input_format() -> None:
    factory = EngineFactory()

    async with _client({}) as client:
        loader = EngineLoader(factory, Reconstructor(client, BlobRegistry(), site_url=SITE_URL))
        with pytest.raises(EngineNotReadyError):
            await loader.convert_to_pdf(b"doc", "report.docx")

        await loader.initialize()
        result = await loader.word_to_pdf(b"doc", "Report.DOCX")
        await loader.excel_to_pdf(b"a,b", "table.csv")

    assert result.data == b"%PDF-doc"
    assert result.mime_type == "application/pdf"
    calls = factory.engines[0].converted
    assert [call["input_format"] for call in calls] == ["docx", "csv"]
    assert calls[0]["output_format"] == "pdf"
    assert calls[1]["file_name"] == "table.csv"


@pytest.mark.asyncio
async def test_destroy_releases_engine_and_blobs() -> None:
    factory = EngineFactory()
    registry = BlobRegistry()

    async with _client(_split_wasm_site()) as client:
        loader = EngineLoader(factory, Reconstructor(client, registry, site_url=SITE_URL))
        await loader.initialize()
        assert len(registry) == 1

        await loader.destroy()

        assert factory.engines[0].destroyed
        assert len(registry) == 0
        assert loader.state is EngineState.DESTROYED
        assert not loader.is_ready()
        with pytest.raises(EngineNotReadyError):
            await loader.initialize()
        with pytest.raises(EngineNotReadyError):
            await loader.ppt_to_pdf(b"slides", "deck.pptx")


@pytest.mark.asyncio
async def test_unknown_engine_phase_is_reported_as_initializing() -> None:
    factory = EngineFactory()
    factory.phase = "downloading"
    progress: list[LoadProgress] = []

    async with _client({}) as client:
        loader = EngineLoader(factory, Reconstructor(client, BlobRegistry(), site_url=SITE_URL))
        await loader.initialize(progress.append)

    assert loader.is_ready()
    assert [item.phase for item in progress] == [LoadPhase.LOADING, LoadPhase.INITIALIZING, LoadPhase.READY]


@pytest.mark.asyncio
async def test_destroy_during_initialize_is_terminal() -> None:
    factory = EngineFactory()
    factory.gate = asyncio.Event()
    registry = BlobRegistry()

    async with _client(_split_wasm_site()) as client:
        loader = EngineLoader(factory, Reconstructor(client, registry, site_url=SITE_URL))
        starting = asyncio.create_task(loader.initialize())
        waiting = asyncio.create_task(loader.initialize())
        while not factory.engines:
            await asyncio.sleep(0)

        await loader.destroy()
        factory.gate.set()
        results = await asyncio.gather(starting, waiting, return_exceptions=True)

    assert all(isinstance(result, EngineNotReadyError) for result in results)
    assert factory.engines[0].destroyed
    assert loader.state is EngineState.DESTROYED
    assert not loader.is_ready()
    assert len(registry) == 0
    with pytest.raises(EngineNotReadyError):
        await loader.convert_to_pdf(b"doc", "report.docx")
