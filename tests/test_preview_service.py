"""Scenario tests for :class:`terrarium.ui.preview_service.PreviewService`."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from terrarium.services.errors import SessionNotFoundError, SourceFileError, WatchSetupError
from terrarium.services.recent_files import RecencyStore
from terrarium.services.settings import Settings
from terrarium.services.toolchain import BundleSuccess, InvocationTimeout, ProcessError
from terrarium.ui.domain.session_registry import SessionRegistry
from terrarium.ui.events import (
    BundleFailed,
    BundleReady,
    BundleTrigger,
    EventBus,
    NoFileLoaded,
    RecentFilesChanged,
    SessionClosed,
    SessionOpened,
    SetupFinished,
    SetupStarted,
)
from terrarium.ui.preview_service import PreviewService, change_watcher_factory


class _FakeInvoker:
    def __init__(self) -> None:
        self.calls: list[Path] = []
        self.results: list[Any] = []
        self.installing = False
        self.gate: asyncio.Event | None = None

    async def invoke(self, source, *, on_setup_started=None, on_setup_finished=None):
        self.calls.append(Path(source))
        if self.installing and on_setup_started is not None:
            on_setup_started()
        if self.gate is not None:
            await self.gate.wait()
        if self.installing and on_setup_finished is not None:
            on_setup_finished()
        if self.results:
            return self.results.pop(0)
        return BundleSuccess(f"bundle:{Path(source).name}")


class _FakeWatcher:
    def __init__(self, path: Path, on_change: Callable[[], None], fail: bool = False) -> None:
        self.path = path
        self.on_change = on_change
        self.fail = fail
        self.started = False
        self.stopped = False

    def start(self) -> None:
        if self.fail:
            raise WatchSetupError(path=str(self.path))
        self.started = True

    def stop(self) -> None:
        self.stopped = True


class _Harness:
    def __init__(self, tmp_path: Path, *, watch_fails: bool = False) -> None:
        self.bus = EventBus()
        self.events: list[Any] = []
        for event_type in (
            SessionOpened,
            SessionClosed,
            NoFileLoaded,
            SetupStarted,
            SetupFinished,
            BundleReady,
            BundleFailed,
            RecentFilesChanged,
        ):
            self.bus.subscribe(event_type, self.events.append)
        self.invoker = _FakeInvoker()
        self.registry = SessionRegistry()
        self.recents = RecencyStore(tmp_path / "cache")
        self.watchers: list[_FakeWatcher] = []
        self._watch_fails = watch_fails
        self.service = PreviewService(
            registry=self.registry,
            invoker=self.invoker,  # type: ignore[arg-type]
            recents=self.recents,
            bus=self.bus,
            watcher_factory=self._make_watcher,
        )

    def _make_watcher(self, path: Path, on_change: Callable[[], None]) -> _FakeWatcher:
        watcher = _FakeWatcher(path, on_change, fail=self._watch_fails)
        self.watchers.append(watcher)
        return watcher

    def of_type(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def harness(tmp_path: Path) -> _Harness:
    return _Harness(tmp_path)


def _write(path: Path) -> Path:
    path.write_text("export default () => <p/>;\n", encoding="utf-8")
    return path


@pytest.mark.asyncio
async def test_open_file_delivers_bundle_and_records_recent(harness: _Harness, source_file: Path) -> None:
    result = await harness.service.open_file("main", source_file)

    assert isinstance(result, BundleSuccess)
    ready = harness.of_type(BundleReady)
    assert [(event.session_id, event.payload, event.trigger) for event in ready] == [
        ("main", "bundle:a.tsx", BundleTrigger.REQUEST)
    ]
    assert [entry.path for entry in harness.service.recent_files()] == [str(source_file.absolute())]
    assert harness.of_type(RecentFilesChanged)[0].entries[0].path == str(source_file.absolute())
    assert harness.registry.lookup("main") == source_file.absolute()
    assert harness.watchers[0].started
    assert harness.registry.get("main").watcher is harness.watchers[0]


@pytest.mark.asyncio
async def test_open_missing_file_fails_before_invocation(harness: _Harness, tmp_path: Path) -> None:
    with pytest.raises(SourceFileError) as excinfo:
        await harness.service.open_file("main", tmp_path / "missing.tsx")

    assert str(excinfo.value) == f"File not found: {tmp_path / 'missing.tsx'}"
    assert harness.invoker.calls == []
    assert harness.events == []
    assert "main" not in harness.registry


@pytest.mark.asyncio
async def test_open_wrong_extension_is_rejected(harness: _Harness, tmp_path: Path) -> None:
    script = _write(tmp_path / "file.ts")

    with pytest.raises(SourceFileError) as excinfo:
        await harness.service.open_file("main", script)

    assert str(excinfo.value) == f"Not a TSX file: {script}"
    assert harness.invoker.calls == []


@pytest.mark.asyncio
async def test_error_results_are_delivered_with_kind(harness: _Harness, source_file: Path) -> None:
    harness.invoker.results.append(ProcessError("exit 1"))

    result = await harness.service.open_file("main", source_file)

    assert isinstance(result, ProcessError)
    failed = harness.of_type(BundleFailed)
    assert len(failed) == 1
    assert failed[0].message == "Bundler failed:\nexit 1"
    assert failed[0].kind == "process"


@pytest.mark.asyncio
async def test_setup_notifications_are_published_per_session(harness: _Harness, source_file: Path) -> None:
    harness.invoker.installing = True

    await harness.service.open_file("main", source_file)

    names = [type(event).__name__ for event in harness.events if isinstance(event, (SetupStarted, SetupFinished, BundleReady))]
    assert names == ["SetupStarted", "SetupFinished", "BundleReady"]
    assert harness.of_type(SetupStarted)[0].session_id == "main"


@pytest.mark.asyncio
async def test_timeout_leaves_session_usable(harness: _Harness, source_file: Path) -> None:
    harness.invoker.results.append(InvocationTimeout(120.0))

    first = await harness.service.open_file("main", source_file)
    second = await harness.service.request_bundle("main")

    assert isinstance(first, InvocationTimeout)
    assert isinstance(second, BundleSuccess)
    assert [type(event).__name__ for event in harness.events if isinstance(event, (BundleReady, BundleFailed))] == [
        "BundleFailed",
        "BundleReady",
    ]


@pytest.mark.asyncio
async def test_request_bundle_without_file_raises(harness: _Harness) -> None:
    with pytest.raises(SessionNotFoundError):
        await harness.service.request_bundle("main")


@pytest.mark.asyncio
async def test_change_triggers_tagged_rebuild(harness: _Harness, source_file: Path) -> None:
    await harness.service.open_file("main", source_file)

    harness.watchers[0].on_change()
    await harness.service.wait_for_pending()

    ready = harness.of_type(BundleReady)
    assert [event.trigger for event in ready] == [BundleTrigger.REQUEST, BundleTrigger.CHANGE]
    assert len(harness.invoker.calls) == 2


@pytest.mark.asyncio
async def test_reopen_in_same_session_replaces_watcher(
    harness: _Harness, source_file: Path, tmp_path: Path
) -> None:
    other = _write(tmp_path / "b.tsx")
    await harness.service.open_file("main", source_file)
    await harness.service.open_file("main", other)

    assert harness.watchers[0].stopped
    assert not harness.watchers[1].stopped
    assert harness.registry.lookup("main") == other.absolute()

    # A late change notification from the old file is ignored.
    harness.watchers[0].on_change()
    await harness.service.wait_for_pending()
    assert harness.invoker.calls[-1] == other.absolute()
    assert len(harness.invoker.calls) == 2


@pytest.mark.asyncio
async def test_result_for_closed_session_is_dropped(harness: _Harness, source_file: Path) -> None:
    await harness.service.open_file("main", source_file)
    harness.invoker.gate = asyncio.Event()

    pending = asyncio.ensure_future(harness.service.request_bundle("main"))
    await asyncio.sleep(0)
    assert harness.service.close_session("main")
    harness.invoker.gate.set()
    result = await pending

    assert isinstance(result, BundleSuccess)
    assert len(harness.of_type(BundleReady)) == 1
    assert harness.of_type(SessionClosed)[0].session_id == "main"
    assert harness.watchers[0].stopped
    assert not harness.service.close_session("main")


@pytest.mark.asyncio
async def test_watch_setup_failure_degrades_quietly(tmp_path: Path, source_file: Path) -> None:
    harness = _Harness(tmp_path, watch_fails=True)

    result = await harness.service.open_file("main", source_file)

    assert isinstance(result, BundleSuccess)
    assert harness.registry.get("main").watcher is None


@pytest.mark.asyncio
async def test_open_paths_assigns_primary_then_new_sessions(harness: _Harness, tmp_path: Path) -> None:
    first = _write(tmp_path / "First.TSX")
    second = _write(tmp_path / "second.Tsx")
    ignored = _write(tmp_path / "third.ts")

    results = await harness.service.open_paths([tmp_path / "nope.tsx", ignored, first, second])

    assert list(results) == ["main", "preview-1"]
    assert harness.registry.lookup("main") == first.absolute()
    assert harness.registry.lookup("preview-1") == second.absolute()
    assert [entry.path for entry in harness.service.recent_files()] == [
        str(second.absolute()),
        str(first.absolute()),
    ]


@pytest.mark.asyncio
async def test_open_paths_without_usable_file_reports_no_file(harness: _Harness, tmp_path: Path) -> None:
    results = await harness.service.open_paths([tmp_path / "nope.tsx"])

    assert results == {}
    assert [event.session_id for event in harness.of_type(NoFileLoaded)] == ["main"]
    assert harness.invoker.calls == []


@pytest.mark.asyncio
async def test_aclose_releases_all_watchers(harness: _Harness, source_file: Path) -> None:
    await harness.service.open_file("main", source_file)
    await harness.service.open_new_session(source_file)

    await harness.service.aclose()

    assert all(watcher.stopped for watcher in harness.watchers)
    assert len(harness.registry) == 0


@pytest.mark.asyncio
async def test_burst_of_disk_writes_rebuilds_once(tmp_path: Path, source_file: Path) -> None:
    bus = EventBus()
    ready: list[BundleReady] = []
    bus.subscribe(BundleReady, ready.append)
    invoker = _FakeInvoker()
    service = PreviewService(
        registry=SessionRegistry(),
        invoker=invoker,  # type: ignore[arg-type]
        recents=RecencyStore(tmp_path / "cache"),
        bus=bus,
        watcher_factory=change_watcher_factory(Settings(debounce_seconds=0.5, watch_batch_ms=20)),
    )

    def _changes() -> list[BundleReady]:
        return [event for event in ready if event.trigger is BundleTrigger.CHANGE]

    try:
        await service.open_file("main", source_file)
        # Let the subscription register and the opening debounce window pass.
        await asyncio.sleep(0.7)

        for index in range(5):
            source_file.write_text(f"export default () => <p>{index}</p>;\n", encoding="utf-8")
            await asyncio.sleep(0.02)

        for _ in range(100):
            if _changes():
                break
            await asyncio.sleep(0.05)
        await asyncio.sleep(0.7)
        await service.wait_for_pending()

        assert len(_changes()) == 1
        assert _changes()[0].session_id == "main"
        assert invoker.calls == [source_file.absolute(), source_file.absolute()]
    finally:
        await service.aclose()
