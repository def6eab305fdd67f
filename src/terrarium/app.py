"""Application bootstrap helpers for the Terrarium previewer."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .services.errors import PersistenceError
from .services.recent_files import RecencyStore
from .services.runtime_locator import RuntimeLocator
from .services.settings import Settings, SettingsStore
from .services.toolchain import ToolchainInvoker
from .ui.domain.session_registry import SessionRegistry
from .ui.events import EventBus
from .ui.headless import HeadlessPreviewSurface
from .ui.preview_service import PreviewService, change_watcher_factory
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_LOGGER = logging.getLogger(__name__)
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure structured logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def build_service(
    settings: Settings,
    *,
    bus: EventBus | None = None,
    watch: bool = True,
) -> PreviewService:
    """Wire the preview pipeline from ``settings``."""

    cache_dir = settings.resolved_cache_dir()
    locator = RuntimeLocator(
        runtime_name=settings.runtime_name,
        explicit_path=settings.runtime_path,
    )
    invoker = ToolchainInvoker(
        locator=locator,
        script=settings.resolved_toolchain_script(),
        cache_dir=cache_dir,
        timeout=settings.invoke_timeout,
    )
    return PreviewService(
        registry=SessionRegistry(),
        invoker=invoker,
        recents=RecencyStore(cache_dir),
        bus=bus or EventBus(),
        watcher_factory=change_watcher_factory(settings) if watch else None,
        source_extension=settings.source_extension,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the `terrarium` console script."""

    args = _parse_cli_args(argv)

    debug = args.debug or _env_flag("TERRARIUM_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("TERRARIUM_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    if args.output_dir:
        cli_overrides["output_dir"] = args.output_dir

    overrides_mapping: Dict[str, Any] | None = cli_overrides or None
    settings = load_settings(resolved_path, store=settings_store, overrides=overrides_mapping)

    if args.save_settings:
        try:
            saved_to = settings_store.save(settings)
        except PersistenceError as exc:
            print(exc.message, file=sys.stderr)
            return 1
        print(f"Settings saved to {saved_to}")
        return 0

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return 0

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    service = build_service(settings, watch=not args.once)
    surface = HeadlessPreviewSurface(service.bus, settings.resolved_output_dir())
    _LOGGER.info("Writing previews to %s", surface.output_dir)

    exit_code = 0
    try:
        loop.run_until_complete(service.open_paths(args.paths))
        if args.once:
            exit_code = 1 if surface.failures or not service.registry.session_ids() else 0
        else:
            loop.run_forever()
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
    finally:
        with contextlib.suppress(RuntimeError):
            loop.run_until_complete(service.aclose())
        surface.detach()
        _drain_event_loop(loop)
        loop.close()
        asyncio.set_event_loop(None)
    return exit_code


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _drain_event_loop(loop: asyncio.AbstractEventLoop) -> None:
    """Cancel outstanding tasks and shutdown async machinery before closing."""

    if loop.is_closed():
        return

    async def _cleanup() -> None:
        current_task = None
        with contextlib.suppress(RuntimeError):
            current_task = asyncio.current_task(loop=loop)

        tasks = [
            task
            for task in asyncio.all_tasks(loop)
            if not task.done() and task is not current_task
        ]
        if tasks:
            _LOGGER.debug("Canceling %s pending asyncio task(s) before shutdown.", len(tasks))
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        await loop.shutdown_asyncgens()
        with contextlib.suppress(RuntimeError, NotImplementedError):
            await loop.shutdown_default_executor()

    try:
        loop.run_until_complete(_cleanup())
    except RuntimeError as exc:  # pragma: no cover - loop already stopping
        _LOGGER.debug("Unable to drain asyncio loop: %s", exc)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="terrarium",
        add_help=True,
        description="Preview TSX component files, rebuilding whenever they change.",
    )
    parser.add_argument(
        "paths",
        nargs="*",
        metavar="PATH",
        help="TSX files to preview; the first opens the main session.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload and exit.",
    )
    parser.add_argument(
        "--save-settings",
        action="store_true",
        help="Persist the effective settings (including --set overrides) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.terrarium/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings before launch (repeatable).",
    )
    parser.add_argument(
        "--output-dir",
        metavar="DIR",
        help="Directory receiving the rendered <session>.html preview pages.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Bundle every file once without watching; exit non-zero if any build failed.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    optional = type(None) in get_args(annotation)
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if optional and normalized.lower() in {"none", "null"}:
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return args[0]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    metadata = {
        "path": str(store.path),
        "cache_dir": str(settings.resolved_cache_dir()),
        "toolchain_script": str(settings.resolved_toolchain_script()),
        "output_dir": str(settings.resolved_output_dir()),
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    output = {"settings": payload, "meta": metadata}
    json.dump(output, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("TERRARIUM_"))


if __name__ == "__main__":  # pragma: no cover - module execution
    raise SystemExit(main())
