# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import os
import re
import shutil
import subprocess
import tempfile
from logging import getLogger
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .files import part_path, sp, trunk

logger = getLogger(__name__)

COPY = "copy"
SUFFIX_STAR = "*"
ERR_DIR_NAME = "media-mirror.errors"
FFMPEG = "ffmpeg"

# Bit rate modes
ABR = "abr"  # average
CBR = "cbr"  # constant
HCBR = "hcbr"  # hard constant
VBR = "vbr"  # variable


class ConversionException(Exception):
    pass


def is_valid_bitrate(value: str, min_: int, max_: int) -> bool:
    """value must be a 1-3 digit number in [min_, max_]"""
    if not re.fullmatch(r"\d{1,3}", value):
        return False
    return min_ <= int(value) <= max_


def _clean(conv: str) -> str:
    return conv.strip().lower()


def _install(tmp: Path, tgt: Path) -> None:
    """Move a finished file onto tgt without exposing a partial tgt"""
    part = part_path(tgt)
    shutil.move(str(tmp), str(part))
    os.replace(part, tgt)


def write_error_log(err_dir: Optional[Path], tgt: Path, output: str) -> None:
    if err_dir is None:
        return
    err_file = err_dir / (trunk(Path(tgt.name)).name + ".log")
    try:
        err_dir.mkdir(parents=True, exist_ok=True)
        err_file.write_text(output)
    except OSError as e:
        logger.error("Could not write error log %s: %s", str(err_file), e)


def run_ffmpeg(
    src: Path, tgt: Path, params: List[str], err_dir: Optional[Path] = None
) -> None:
    """Run ffmpeg src -> tgt. The result is written to a temporary directory
    first and moved onto tgt once ffmpeg succeeded.

    Raises:
        ConversionException: ffmpeg failed or could not be started. The
            output of ffmpeg is written to err_dir/<tgt trunk>.log
    """
    with tempfile.TemporaryDirectory(prefix="media-mirror-") as tmpdir:
        tmptgt = Path(tmpdir) / tgt.name
        cmd = [FFMPEG, "-i", str(src)] + params + ["-y", str(tmptgt)]
        logger.debug("Conversion cmd: %s", cmd)
        try:
            subprocess.run(cmd, capture_output=True, check=True)
        except subprocess.CalledProcessError as e:
            logger.error("ffmpeg failed for %s: exit %d", sp(src), e.returncode)
            output = (e.stdout or b"") + (e.stderr or b"")
            write_error_log(err_dir, tgt, output.decode(errors="replace"))
            raise ConversionException(
                f"Conversion of '{src}' failed with exit code {e.returncode}"
            ) from e
        except OSError as e:
            write_error_log(err_dir, tgt, f"{FFMPEG} could not be started: {e}\n")
            raise ConversionException(f"{FFMPEG} could not be started") from e
        _install(tmptgt, tgt)


class Conversion:
    """One target format. normalize() validates a conversion string from the
    config and fills in defaults, execute() converts a single file using
    an already normalized string."""

    name = ""

    def normalize(self, conv: str) -> str:
        raise NotImplementedError

    def params(self, norm: str) -> List[str]:
        raise NotImplementedError

    def execute(
        self, src: Path, tgt: Path, norm: str, err_dir: Optional[Path] = None
    ) -> None:
        run_ffmpeg(src, tgt, self.params(norm), err_dir)


class CopyConversion(Conversion):
    name = COPY

    def normalize(self, conv: str) -> str:
        conv = _clean(conv)
        if conv not in (COPY, ""):
            raise ConversionException(f"'{conv}' is not a valid copy conversion")
        return COPY

    def params(self, norm: str) -> List[str]:
        return []

    def execute(
        self, src: Path, tgt: Path, norm: str, err_dir: Optional[Path] = None
    ) -> None:
        part = part_path(tgt)
        try:
            shutil.copyfile(src, part)
            os.replace(part, tgt)
        except OSError as e:
            write_error_log(err_dir, tgt, f"Copy of '{src}' failed: {e}\n")
            raise ConversionException(f"Copy of '{src}' failed") from e


class FlacConversion(Conversion):
    name = "flac"

    def normalize(self, conv: str) -> str:
        conv = _clean(conv)
        if conv == "":
            logger.info("Set FLAC conversion to default: cl:5")
            return "cl:5"
        match = re.fullmatch(r"cl:(\d{1,2})", conv)
        if not match or not 0 <= int(match.group(1)) <= 12:
            raise ConversionException(f"'{conv}' is not a valid FLAC conversion")
        return conv

    def params(self, norm: str) -> List[str]:
        return ["-codec:a", "flac", "-compression_level", norm.split(":")[1]]


class Mp3Conversion(Conversion):
    name = "mp3"

    def normalize(self, conv: str) -> str:
        conv = _clean(conv)
        parts = conv.split("|")
        if len(parts) != 2:
            raise ConversionException(f"'{conv}' is not a valid MP3 conversion")
        rate = parts[0].split(":")
        valid = len(rate) == 2
        if valid:
            mode, value = rate
            if mode in (ABR, CBR):
                valid = is_valid_bitrate(value, 8, 500)
            elif mode == VBR:
                valid = re.fullmatch(r"\d(\.\d{1,3})?", value) is not None
            else:
                valid = False
        if valid:
            valid = re.fullmatch(r"cl:\d", parts[1]) is not None
        if not valid:
            raise ConversionException(f"'{conv}' is not a valid MP3 conversion")
        return conv

    def params(self, norm: str) -> List[str]:
        rate, level = norm.split("|")
        mode, value = rate.split(":")
        params = ["-codec:a", "libmp3lame"]
        if mode == ABR:
            params += ["-b:a", value + "k", "-abr", "1"]
        elif mode == CBR:
            params += ["-b:a", value + "k"]
        else:
            params += ["-q:a", value]
        return params + ["-compression_level", level.split(":")[1]]


class OggConversion(Conversion):
    name = "ogg"

    def normalize(self, conv: str) -> str:
        conv = _clean(conv)
        if conv == "":
            logger.info("Set OGG conversion to default: vbr:3.0")
            return "vbr:3.0"
        rate = conv.split(":")
        valid = len(rate) == 2
        if valid:
            mode, value = rate
            if mode == ABR:
                valid = is_valid_bitrate(value, 8, 500)
            elif mode == VBR:
                valid = (
                    re.fullmatch(r"[-+]?\d{1,2}(\.\d)?", value) is not None
                    and -1.0 <= float(value) <= 10.0
                )
            else:
                valid = False
        if not valid:
            raise ConversionException(f"'{conv}' is not a valid OGG conversion")
        return conv

    def params(self, norm: str) -> List[str]:
        mode, value = norm.split(":")
        params = ["-codec:a", "libvorbis"]
        if mode == ABR:
            return params + ["-b", value + "k"]
        return params + ["-q:a", value]


class OpusConversion(Conversion):
    name = "opus"

    def normalize(self, conv: str) -> str:
        conv = _clean(conv)
        parts = conv.split("|")
        valid = 1 <= len(parts) <= 2
        if valid:
            rate = parts[0].split(":")
            valid = (
                len(rate) == 2
                and rate[0] in (VBR, CBR, HCBR)
                and is_valid_bitrate(rate[1], 6, 510)
            )
        if valid and len(parts) == 2:
            match = re.fullmatch(r"cl:(\d{1,2})", parts[1])
            valid = match is not None and 0 <= int(match.group(1)) <= 10
        if not valid:
            raise ConversionException(f"'{conv}' is not a valid OPUS conversion")
        if len(parts) == 1:
            logger.info("Set OPUS compression level to default: cl:10")
            conv += "|cl:10"
        return conv

    def params(self, norm: str) -> List[str]:
        rate, level = norm.split("|")
        mode, value = rate.split(":")
        vbr = {VBR: "on", CBR: "off", HCBR: "constrained"}[mode]
        return [
            "-codec:a",
            "libopus",
            "-b:a",
            value + "k",
            "-vbr",
            vbr,
            "-compression_level",
            level.split(":")[1],
        ]


COPY_CONVERSION = CopyConversion()
_TO_FLAC = FlacConversion()
_TO_MP3 = Mp3Conversion()
_TO_OGG = OggConversion()
_TO_OPUS = OpusConversion()

# (source suffix, target suffix) -> conversion
VALID_CONVERSIONS: Dict[Tuple[str, str], Conversion] = {
    ("flac", "flac"): _TO_FLAC,
    ("wav", "flac"): _TO_FLAC,
    ("flac", "mp3"): _TO_MP3,
    ("mp3", "mp3"): _TO_MP3,
    ("ogg", "mp3"): _TO_MP3,
    ("opus", "mp3"): _TO_MP3,
    ("wav", "mp3"): _TO_MP3,
    ("flac", "ogg"): _TO_OGG,
    ("mp3", "ogg"): _TO_OGG,
    ("ogg", "ogg"): _TO_OGG,
    ("opus", "ogg"): _TO_OGG,
    ("wav", "ogg"): _TO_OGG,
    ("flac", "opus"): _TO_OPUS,
    ("mp3", "opus"): _TO_OPUS,
    ("ogg", "opus"): _TO_OPUS,
    ("opus", "opus"): _TO_OPUS,
    ("wav", "opus"): _TO_OPUS,
    (SUFFIX_STAR, SUFFIX_STAR): COPY_CONVERSION,
}


def get_conversion(src_suffix: str, tgt_suffix: str, norm: str) -> Conversion:
    """Conversion responsible for src_suffix -> tgt_suffix. A normalized
    string equal to "copy" always selects the copy conversion.

    Raises:
        ConversionException: The suffix pair is not supported.
    """
    if norm == COPY:
        return COPY_CONVERSION
    try:
        return VALID_CONVERSIONS[(src_suffix, tgt_suffix)]
    except KeyError as e:
        raise ConversionException(
            f"Conversion of '{src_suffix}' into '{tgt_suffix}' not supported"
        ) from e
