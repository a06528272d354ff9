"""Shared fixtures: small source/target trees with a config file."""

import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import tomli_w

from media_mirror.config import CONFIG_FILE_NAME, SyncConfig

DEFAULT_RULES = [
    {"source": "flac", "target": "mp3", "conversion": "vbr:2|cl:3"},
    {"source": "mp3", "target": "mp3", "conversion": "copy"},
]

# A point in time well before any test run
PAST = time.time() - 3600


def make_file(path: Path, size: int = 10, mtime: Optional[float] = PAST) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def fake_ffmpeg(cmd: List[str], **kwargs: Any) -> None:
    """Stand-in for subprocess.run: writes the output file ffmpeg would"""
    src = Path(cmd[2])
    Path(cmd[-1]).write_bytes(src.read_bytes()[: max(1, src.stat().st_size // 4)])


@pytest.fixture
def src_dir(tmp_path: Path) -> Path:
    """Create an empty source directory."""
    path = tmp_path / "src"
    path.mkdir()
    return path


@pytest.fixture
def tgt_dir(tmp_path: Path) -> Path:
    """Create an empty target directory."""
    path = tmp_path / "tgt"
    path.mkdir()
    return path


@pytest.fixture
def write_config(src_dir: Path, tgt_dir: Path) -> Callable[..., Path]:
    """Return a function that writes a config file into the target."""

    def write(rules: Optional[List[Dict[str, Any]]] = None, **extra: Any) -> Path:
        toml_dict: Dict[str, Any] = {
            "source_dir": str(src_dir),
            "walkers": 4,
            "converters": 2,
        }
        toml_dict.update(extra)
        toml_dict["rules"] = DEFAULT_RULES if rules is None else rules
        config_path = tgt_dir / CONFIG_FILE_NAME
        with open(config_path, "wb") as f:
            tomli_w.dump(toml_dict, f)
        return config_path

    return write


@pytest.fixture
def load_config(tgt_dir: Path, write_config: Callable[..., Path]) -> Callable:
    """Return a function that writes and loads a config."""

    def load(rules: Optional[List[Dict[str, Any]]] = None, **extra: Any) -> SyncConfig:
        write_config(rules, **extra)
        return SyncConfig.from_toml(tgt_dir)

    return load
