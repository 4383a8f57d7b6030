"""
Configuration loading.

config.yaml at the repo root (or $EXTRACTOR_CONFIG) is deep-merged over
DEFAULTS, then sliced into typed views for each process.
"""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.yaml"

DEFAULTS = {
    "control": {
        "host": "127.0.0.1",
        "port": 9101,
        "worker_url": "http://127.0.0.1:9102",
        "data_dir": "data",
        "turn_deadline_seconds": 180,
        "max_turn_retries": 5,
        "delays": {
            "after_completion": 3,
            "after_handshake": 2,
            "after_timeout": 5,
            "after_skip": 1,
            "after_error": 5,
            "on_start": 1,
            "on_resume": 2,
        },
        "export": {
            "dir": "data/exports",
            "on_drain": True,
            "cleanup_after_drain": True,
        },
        "request_timeout": 10,
    },
    "worker": {
        "host": "127.0.0.1",
        "port": 9102,
        "control_url": "http://127.0.0.1:9101",
        "preamble": "",
        "chunk_size": 15,
        "chunk_pause_min": 0.01,
        "chunk_pause_max": 0.05,
        "reset_pause": 0.8,
        "settle_pause": 1.0,
        "submit_pause": 0.5,
        "submit_attempts": 10,
        "submit_poll_interval": 2.0,
        "stable_threshold": 3,
        "stable_interval": 1.0,
        "stable_ceiling": 90,
        "report_attempts": 3,
    },
    "surface": {
        "url": "https://gemini.google.com/app",
        "headless": False,
        "slow_mo": 0,
        "browser_data_dir": "browser_data",
        "selectors": {
            "input": "div.ql-editor",
            "output": ".model-response-text",
            "send_button": "button[aria-label='Send message']",
            "busy": ["[aria-busy='true']", "mat-spinner"],
        },
    },
    "logging": {
        "dir": "logs",
        "console_level": "INFO",
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> dict:
    """Load configuration, falling back to DEFAULTS for anything missing."""
    config_path = Path(path or os.environ.get("EXTRACTOR_CONFIG") or CONFIG_PATH)
    if config_path.exists():
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        return _deep_merge(DEFAULTS, loaded)
    return copy.deepcopy(DEFAULTS)


def resolve_path(path: str) -> Path:
    p = Path(path)
    return p if p.is_absolute() else PROJECT_ROOT / p


@dataclass
class ControlConfig:
    """Settings for the control process."""
    host: str = "127.0.0.1"
    port: int = 9101
    worker_url: str = "http://127.0.0.1:9102"
    data_dir: Path = field(default_factory=lambda: PROJECT_ROOT / "data")
    turn_deadline_seconds: float = 180.0
    max_turn_retries: int = 5  # 0 = retry forever
    delays: dict = field(default_factory=lambda: dict(DEFAULTS["control"]["delays"]))
    export_dir: Path = field(default_factory=lambda: PROJECT_ROOT / "data" / "exports")
    export_on_drain: bool = True
    cleanup_after_drain: bool = True
    request_timeout: float = 10.0

    def delay(self, name: str) -> float:
        return float(self.delays.get(name, DEFAULTS["control"]["delays"].get(name, 3)))

    @classmethod
    def from_dict(cls, config: dict) -> "ControlConfig":
        control = _deep_merge(DEFAULTS["control"], config.get("control", {}))
        export = control["export"]
        return cls(
            host=control["host"],
            port=int(control["port"]),
            worker_url=control["worker_url"],
            data_dir=resolve_path(control["data_dir"]),
            turn_deadline_seconds=float(control["turn_deadline_seconds"]),
            max_turn_retries=int(control["max_turn_retries"]),
            delays=dict(control["delays"]),
            export_dir=resolve_path(export["dir"]),
            export_on_drain=bool(export["on_drain"]),
            cleanup_after_drain=bool(export["cleanup_after_drain"]),
            request_timeout=float(control["request_timeout"]),
        )


@dataclass
class ProtocolConfig:
    """Timing and retry parameters for the worker's interaction protocol."""
    preamble: str = ""
    chunk_size: int = 15
    chunk_pause_min: float = 0.01
    chunk_pause_max: float = 0.05
    reset_pause: float = 0.8
    settle_pause: float = 1.0
    submit_pause: float = 0.5
    submit_attempts: int = 10
    submit_poll_interval: float = 2.0
    stable_threshold: int = 3
    stable_interval: float = 1.0
    stable_ceiling: float = 90.0

    @classmethod
    def from_dict(cls, config: dict) -> "ProtocolConfig":
        worker = _deep_merge(DEFAULTS["worker"], config.get("worker", {}))
        return cls(
            preamble=worker["preamble"] or "",
            chunk_size=int(worker["chunk_size"]),
            chunk_pause_min=float(worker["chunk_pause_min"]),
            chunk_pause_max=float(worker["chunk_pause_max"]),
            reset_pause=float(worker["reset_pause"]),
            settle_pause=float(worker["settle_pause"]),
            submit_pause=float(worker["submit_pause"]),
            submit_attempts=int(worker["submit_attempts"]),
            submit_poll_interval=float(worker["submit_poll_interval"]),
            stable_threshold=int(worker["stable_threshold"]),
            stable_interval=float(worker["stable_interval"]),
            stable_ceiling=float(worker["stable_ceiling"]),
        )


@dataclass
class SurfaceConfig:
    """Where the automation surface lives and how to find its parts."""
    url: str = "https://gemini.google.com/app"
    headless: bool = False
    slow_mo: int = 0
    browser_data_dir: Path = field(default_factory=lambda: PROJECT_ROOT / "browser_data")
    input_selector: str = "div.ql-editor"
    output_selector: str = ".model-response-text"
    send_button_selector: str = "button[aria-label='Send message']"
    busy_selectors: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, config: dict) -> "SurfaceConfig":
        surface = _deep_merge(DEFAULTS["surface"], config.get("surface", {}))
        selectors = surface["selectors"]
        return cls(
            url=surface["url"],
            headless=bool(surface["headless"]),
            slow_mo=int(surface["slow_mo"]),
            browser_data_dir=resolve_path(surface["browser_data_dir"]),
            input_selector=selectors["input"],
            output_selector=selectors["output"],
            send_button_selector=selectors["send_button"],
            busy_selectors=list(selectors.get("busy") or []),
        )
