# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import glob
import os
from datetime import datetime, timezone
from logging import getLogger
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import tomli
import tomli_w
from attrs import define, field, frozen

from .conversion import (
    COPY,
    ERR_DIR_NAME,
    SUFFIX_STAR,
    VALID_CONVERSIONS,
    Conversion,
    ConversionException,
    get_conversion,
)
from .files import rel_copy, suffix

logger = getLogger(__name__)

CONFIG_FILE_NAME = "media-mirror.toml"
LOG_FILE_NAME = "media-mirror.log"
PROC_STAT_WIP = "wip"
DEFAULT_WALKERS = 20


def validate_pos_int(var_: Any) -> int:
    """Convert var into an int and validate it is positive"""
    if isinstance(var_, bool):
        raise ValueError(f"{var_} is not a positive integer.")
    var_ = int(var_)  # Raises ValueError if not able to convert
    if var_ < 1:
        raise ValueError(f"{var_} is not a positive integer.")
    return var_


def validate_is_dir(path_str: Any) -> Path:
    dir_ = Path(path_str).expanduser()
    if not dir_.is_dir():
        raise FileNotFoundError(f"{path_str} is not a directory or does not exist.")
    return dir_


def parse_last_sync(value: Any) -> Optional[datetime]:
    """Accept a TOML datetime or an ISO-8601 string. Naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        ts = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"{value!r} is not a timestamp.")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def available_cpus() -> int:
    try:
        return len(os.sched_getaffinity(0))
    except AttributeError:
        logger.info(
            "Failed to determine number of available CPUs using"
            " os.sched_getaffinity(), falling back to os.cpu_count()."
        )
        return os.cpu_count() or 1


class ConfigException(Exception):
    pass


@frozen
class ConversionRule:
    source: str
    target: str
    conversion: str  # normalized

    def target_suffix(self, src_suffix: str) -> str:
        return src_suffix if self.target == SUFFIX_STAR else self.target


def build_rule(raw: Any, num: int) -> ConversionRule:
    """Validate rule number num from the config and normalize its conversion

    Raises:
        ConfigException: The rule is not valid.
    """
    if not isinstance(raw, dict):
        raise ConfigException(f"Rule #{num}: must be a table.")
    source = str(raw.get("source") or "").strip().lower().lstrip(".")
    if not source:
        raise ConfigException(f"Rule #{num}: no source suffix.")
    target = str(raw.get("target") or "").strip().lower().lstrip(".")
    if not target:
        logger.info("Rule #%d: No target suffix, using source suffix", num)
        target = source
    conversion = str(raw.get("conversion") or "").strip().lower()

    if (source == SUFFIX_STAR) != (target == SUFFIX_STAR):
        raise ConfigException(
            f"Rule #{num}: Either both suffixes need to be '*' or none."
        )
    if source == SUFFIX_STAR and conversion not in (COPY, ""):
        raise ConfigException(f"Rule #{num}: For suffix '*' only copy is allowed.")
    if source == target and conversion == "":
        logger.info("Rule #%d: Same suffix without conversion, using copy", num)
        conversion = COPY

    if conversion == COPY:
        if source != target:
            raise ConfigException(
                f"Rule #{num}: copy requires equal source and target suffixes."
            )
        return ConversionRule(source=source, target=target, conversion=COPY)

    try:
        conv = VALID_CONVERSIONS[(source, target)]
    except KeyError as e:
        raise ConfigException(
            f"Rule #{num}: conversion of '{source}' into '{target}' not supported."
        ) from e
    try:
        norm = conv.normalize(conversion)
    except ConversionException as e:
        raise ConfigException(
            f"Rule #{num}: '{conversion}' is not a valid conversion."
        ) from e
    logger.info("Rule #%d: Conversion normalized to '%s'", num, norm)
    return ConversionRule(source=source, target=target, conversion=norm)


def read_toml(config_path: Path) -> Dict[str, Any]:
    with open(config_path, "rb") as f:  # tomli requires "rb"
        try:
            return tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigException(
                f"Config '{config_path}' does not contain valid TOML."
            ) from e


@define
class SyncConfig:
    src_dir: Path
    tgt_dir: Path
    config_path: Path
    rules: Dict[str, ConversionRule]
    excludes: Set[Path] = field(factory=set)
    last_sync: Optional[datetime] = None
    wip: bool = False
    num_walkers: int = DEFAULT_WALKERS
    num_converters: int = 1

    @classmethod
    def from_toml(
        cls, tgt_dir: Path, config_path: Optional[Path] = None
    ) -> "SyncConfig":
        """Read the config file from the target directory and validate it

        Args:
            tgt_dir: Path to the target directory (holds the config).
            config_path: Path to the TOML config, defaults to
                tgt_dir/media-mirror.toml.

        Raises:
            FileNotFoundError: Config file not found at the config_path.
            PermissionError: File at config_path is not readable.
            ConfigException: Config file is not correct
        """
        try:
            tgt_dir = validate_is_dir(tgt_dir).resolve()
        except TypeError as e:
            raise ConfigException(
                f"{tgt_dir} is not a valid target directory"
                " path on this operating system."
            ) from e
        except FileNotFoundError as e:
            raise ConfigException(f"{tgt_dir} was not found.") from e

        if config_path is None:
            config_path = tgt_dir / CONFIG_FILE_NAME
        config_path = Path(config_path).expanduser()
        if not config_path.is_file():
            raise FileNotFoundError(f"Config '{config_path}' not found.")

        toml_dict = read_toml(config_path)
        logger.debug("Config: %s", str(toml_dict))

        # Check/sanitize source
        try:
            src_dir_str = toml_dict["source_dir"]
            if not str(src_dir_str).strip():
                raise KeyError("source_dir")
            src_dir = validate_is_dir(src_dir_str).resolve()
        except KeyError as e:
            raise ConfigException(
                "source_dir=<dir> must be defined in the config."
            ) from e
        except TypeError as e:
            raise ConfigException(
                f"source_dir={src_dir_str} is not a valid directory"
                " path on this operating system."
            ) from e
        except FileNotFoundError as e:
            raise ConfigException(f"{src_dir_str} was not found.") from e

        try:
            num_walkers = toml_dict.get("walkers")
            num_walkers = (
                validate_pos_int(num_walkers)
                if num_walkers is not None
                else DEFAULT_WALKERS
            )
        except (TypeError, ValueError) as e:
            raise ConfigException(
                "If 'walkers' is set it must be a positive integer."
            ) from e

        try:
            num_converters = toml_dict.get("converters")
            if num_converters is None:
                num_converters = available_cpus()
                logger.info("converters not configured, using %d", num_converters)
            else:
                num_converters = validate_pos_int(num_converters)
        except (TypeError, ValueError) as e:
            raise ConfigException(
                "If 'converters' is set it must be a positive integer."
            ) from e

        try:
            last_sync = parse_last_sync(toml_dict.get("last_sync"))
        except ValueError as e:
            raise ConfigException(
                f"last_sync={toml_dict.get('last_sync')} could not be parsed."
            ) from e
        if last_sync is None:
            logger.info("No last sync time found, initial sync")

        excludes = expand_excludes(src_dir, toml_dict.get("exclude", []))

        rules: Dict[str, ConversionRule] = {}
        raw_rules = toml_dict.get("rules", [])
        if not isinstance(raw_rules, list):
            raise ConfigException("rules must be an array of tables.")
        for num, raw in enumerate(raw_rules, start=1):
            rule = build_rule(raw, num)
            if rule.source in rules:
                raise ConfigException(
                    f"Rule #{num}: There's already a rule for source suffix"
                    f" '{rule.source}'."
                )
            rules[rule.source] = rule
        if not rules:
            raise ConfigException("No conversion rules found in the config.")

        return cls(
            src_dir=src_dir,
            tgt_dir=tgt_dir,
            config_path=config_path,
            rules=rules,
            excludes=excludes,
            last_sync=last_sync,
            wip=toml_dict.get("processing_status") == PROC_STAT_WIP,
            num_walkers=num_walkers,
            num_converters=num_converters,
        )

    @property
    def err_dir(self) -> Path:
        return self.tgt_dir / ERR_DIR_NAME

    @property
    def own_files(self) -> List[str]:
        """Names in the target root that belong to this program"""
        return [self.config_path.name, LOG_FILE_NAME, ERR_DIR_NAME]

    def get_rule(self, path: Path) -> Optional[ConversionRule]:
        """Rule for the suffix of path, falling back to the '*' rule"""
        rule = self.rules.get(suffix(path).lower())
        if rule is None:
            rule = self.rules.get(SUFFIX_STAR)
        return rule

    def target_path(self, src: Path, is_dir: bool = False) -> Path:
        """Target counterpart of src. Files get the suffix of their rule.

        Raises:
            ValueError: src is not below src_dir or has no rule.
        """
        tgt = rel_copy(self.src_dir, src, self.tgt_dir)
        if is_dir:
            return tgt
        rule = self.get_rule(src)
        if rule is None:
            raise ValueError(f"No conversion rule for '{src}'")
        if rule.target == SUFFIX_STAR:
            return tgt
        return tgt.with_name(tgt.stem + "." + rule.target_suffix(suffix(src)))

    def is_excluded(self, path: Path) -> bool:
        return path in self.excludes

    def conversion_for(self, src: Path) -> Tuple[Conversion, str]:
        """Conversion executor and normalized string for src"""
        rule = self.get_rule(src)
        if rule is None:
            raise ValueError(f"No conversion rule for '{src}'")
        conv = get_conversion(rule.source, rule.target, rule.conversion)
        return conv, rule.conversion

    def _update_toml(self, **changes: Any) -> None:
        """Re-read the config file, apply changes (None removes a key) and
        write it back

        Raises:
            ConfigException: Config could not be read or written.
        """
        try:
            toml_dict = read_toml(self.config_path)
            for key, value in changes.items():
                if value is None:
                    toml_dict.pop(key, None)
                else:
                    toml_dict[key] = value
            with open(self.config_path, "wb") as f:
                tomli_w.dump(toml_dict, f)
        except OSError as e:
            raise ConfigException(
                f"Config '{self.config_path}' cannot be updated."
            ) from e

    def set_wip(self) -> None:
        """Mark the target as being worked on"""
        self._update_toml(processing_status=PROC_STAT_WIP)
        self.wip = True
        logger.debug("Config saved with processing_status=%s", PROC_STAT_WIP)

    def set_done(self, last_sync: datetime) -> None:
        """Record a completed run: store last_sync and drop the wip marker"""
        last_sync = last_sync.astimezone(timezone.utc)
        self._update_toml(processing_status=None, last_sync=last_sync)
        self.wip = False
        self.last_sync = last_sync
        logger.debug("Config saved with last_sync=%s", last_sync.isoformat())


def expand_excludes(src_dir: Path, patterns: Any) -> Set[Path]:
    """Expand exclude patterns (relative to src_dir, may contain wildcards)"""
    if isinstance(patterns, str):
        patterns = [patterns]
    if not isinstance(patterns, list):
        raise ConfigException("exclude must be a list of path patterns.")
    excludes: Set[Path] = set()
    for pattern in patterns:
        pattern = str(pattern).strip().strip("/")
        if not pattern:
            continue
        for match in glob.glob(str(src_dir / pattern)):
            excludes.add(Path(match))
    logger.debug("Excludes: %s", excludes)
    return excludes
