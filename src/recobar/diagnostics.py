"""Command-line helpers for Recobar diagnostics."""
from __future__ import annotations

import argparse
import importlib
import json
import sys
import time
from pathlib import Path
from typing import Sequence

from .config import ConfigManager, default_data_dir
from .version import APP_VERSION

NUMPY_INSTALL_HINT = (
    "Install NumPy inside the active environment (for example `pip install numpy`) "
    "to enable the synthetic capture sink."
)

BOTO3_INSTALL_HINT = (
    "Install boto3 inside the active environment (`pip install boto3`) before enabling "
    "remote storage."
)

LOCAL_STORAGE_HINT = (
    "Choose a recordings folder the service user can write to, or fix its permissions "
    "(for example `chmod u+w <folder>`)."
)

OPTIONAL_MODULES = (
    ("numpy", "NumPy", NUMPY_INSTALL_HINT),
    ("boto3", "boto3", BOTO3_INSTALL_HINT),
)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the diagnostics CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m recobar.diagnostics",
        description="Recobar diagnostics helpers",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.json (defaults to $RECOBAR_DATA_DIR/config.json).",
    )
    return parser


def diagnose_dependencies() -> dict[str, object]:
    """Report which optional third-party modules can be imported."""

    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    versions: dict[str, str | None] = {}

    for module_name, friendly, hint in OPTIONAL_MODULES:
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError:
            status = "error"
            details.append(f"{friendly} module not found.")
            hints.append(hint)
            continue
        except Exception as exc:  # pragma: no cover - depends on runtime environment
            status = "error"
            details.append(f"{friendly} import failed: {exc}")
            hints.append(hint)
            continue
        versions[module_name] = getattr(module, "__version__", None)

    payload: dict[str, object] = {"status": status, "details": details, "versions": versions}
    if hints:
        payload["hints"] = hints
    return payload


def probe_directory(directory: Path) -> dict[str, object]:
    """Check that ``directory`` exists (or can be created) and is writable."""

    result: dict[str, object] = {"path": str(directory), "writable": False}
    if directory.exists() and not directory.is_dir():
        result["error"] = "Path exists but is not a directory"
        return result
    try:
        directory.mkdir(parents=True, exist_ok=True)
        probe = directory / f".write-test-{time.time_ns()}"
        probe.write_bytes(b"")
        probe.unlink()
    except OSError as exc:
        result["error"] = str(exc)
        return result
    result["writable"] = True
    return result


def diagnose_storage(config_manager: ConfigManager) -> dict[str, object]:
    local_dir, remote = config_manager.storage_targets()
    details: list[str] = []
    hints: list[str] = []
    payload: dict[str, object] = {
        "local_enabled": local_dir is not None,
        "remote_enabled": remote is not None,
    }
    if local_dir is not None:
        local = probe_directory(local_dir)
        payload["local"] = local
        if not local["writable"]:
            details.append(f"Recordings folder not writable: {local.get('error')}")
            hints.append(LOCAL_STORAGE_HINT)
    if remote is not None:
        problems = remote.problems()
        payload["remote"] = {"bucket": remote.bucket, "region": remote.region, "problems": problems}
        details.extend(problems)
    if local_dir is None and remote is None:
        details.append("No storage location is enabled; recordings will be discarded.")
    payload["status"] = "error" if details else "ok"
    payload["details"] = details
    if hints:
        payload["hints"] = hints
    return payload


def collect_diagnostics(config_path: Path | str | None = None) -> dict[str, object]:
    """Collect diagnostics payload used by both the CLI and API."""

    path = Path(config_path) if config_path is not None else default_data_dir() / "config.json"
    config_manager = ConfigManager(path)
    return {
        "version": APP_VERSION,
        "config_path": str(path),
        "setup_complete": not config_manager.is_first_time_setup(),
        "dependencies": diagnose_dependencies(),
        "storage": diagnose_storage(config_manager),
    }


def _print_section(title: str, section: object) -> None:
    if not isinstance(section, dict):
        return
    if section.get("status") == "ok":
        print(f"{title}: OK")
        return
    print(f"{title} issues detected:")
    for detail in section.get("details", []):
        print(f" - {detail}")
    hints = section.get("hints")
    if hints:
        print("Hints:")
        for hint in hints:
            print(f" * {hint}")


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the diagnostics CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    payload = collect_diagnostics(args.config)

    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return 0

    print(f"Recobar diagnostics (version {APP_VERSION})")
    print(f"Configuration: {payload['config_path']}")
    if payload["setup_complete"]:
        print("Tenant and device identity configured.")
    else:
        print("First-time setup pending: set a tenant ID and device ID.")
    _print_section("Python dependencies", payload["dependencies"])
    _print_section("Storage", payload["storage"])
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m recobar.diagnostics`."""

    return run(argv)


__all__ = [
    "build_parser",
    "collect_diagnostics",
    "diagnose_dependencies",
    "diagnose_storage",
    "main",
    "probe_directory",
    "run",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
