# packrat/config.py
import tomllib
import tomli_w
import attrs
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .archive import DEFAULT_NO_COMPRESS, DEFAULT_SIZE_THRESHOLD

CONFIG_FILE_NAME = "packrat.toml"


@attrs.define(slots=True)
class Config:
    """Structured configuration for packrat."""
    index_name: str = "index.txt.gz"
    removal_list_name: str = "index_rm.txt"
    size_threshold: int = DEFAULT_SIZE_THRESHOLD
    no_compress: List[str] = attrs.field(factory=lambda: list(DEFAULT_NO_COMPRESS))
    excludes: List[str] = attrs.field(factory=list)
    retry_attempts: int = 6
    retry_delay: float = 0.5
    poll_interval: float = 0.25
    show_progress: bool = True
    log_file: Optional[str] = "packrat.log"
    log_level: str = "WARNING"
    clean_age_days: float = 7.0


def find_config_file() -> Optional[Path]:
    """Searches for packrat.toml upwards from the package directory, then in the cwd."""
    start_dir = Path(__file__).parent
    for parent in [start_dir] + list(start_dir.parents):
        potential_path = parent / CONFIG_FILE_NAME
        if potential_path.is_file():
            return potential_path
    if (Path.cwd() / CONFIG_FILE_NAME).is_file():
        return Path.cwd() / CONFIG_FILE_NAME
    return None


def load_config_with_path(path: Optional[Union[str, Path]] = None) -> tuple[Config, Optional[Path]]:
    """
    Loads configuration from 'packrat.toml' (or the given file).
    If none is found, it returns a default configuration and None for the path.
    """
    config_path = Path(path) if path else find_config_file()

    config_data: Dict[str, Any] = {}
    if config_path:
        with config_path.open("rb") as f:
            config_data = tomllib.load(f)

    # Get the [tool.packrat] table from the TOML file
    packrat_config = config_data.get("tool", {}).get("packrat", {})
    defaults = Config()

    # Resolve the log file relative to the config file's location
    log_file = packrat_config.get("log_file", defaults.log_file)
    if log_file and not Path(log_file).is_absolute():
        base_dir = config_path.parent if config_path else Path.cwd()
        log_file = str((base_dir / log_file).resolve())

    loaded_config = Config(
        index_name=packrat_config.get("index_name", defaults.index_name),
        removal_list_name=packrat_config.get("removal_list_name", defaults.removal_list_name),
        size_threshold=int(packrat_config.get("size_threshold", defaults.size_threshold)),
        no_compress=list(packrat_config.get("no_compress", defaults.no_compress)),
        excludes=list(packrat_config.get("excludes", [])),
        retry_attempts=int(packrat_config.get("retry_attempts", defaults.retry_attempts)),
        retry_delay=float(packrat_config.get("retry_delay", defaults.retry_delay)),
        poll_interval=float(packrat_config.get("poll_interval", defaults.poll_interval)),
        show_progress=bool(packrat_config.get("show_progress", defaults.show_progress)),
        log_file=log_file,
        log_level=str(packrat_config.get("log_level", defaults.log_level)).upper(),
        clean_age_days=float(packrat_config.get("clean_age_days", defaults.clean_age_days)),
    )
    return loaded_config, config_path


def load_config(path: Optional[Union[str, Path]] = None) -> Config:
    """
    Loads configuration from 'packrat.toml'.
    This is a convenience wrapper around load_config_with_path.
    """
    return load_config_with_path(path)[0]


def config_to_dict(cfg: Config) -> Dict[str, Any]:
    """Converts a Config object to a dictionary suitable for TOML serialization."""
    data = attrs.asdict(cfg)
    # Filter out None values to prevent serialization errors with tomli-w
    return {k: v for k, v in data.items() if v is not None}


def save_config_to_path(cfg: Config, path: Union[str, Path]) -> None:
    """Writes the configuration as a [tool.packrat] table."""
    with open(path, "wb") as f:
        tomli_w.dump({"tool": {"packrat": config_to_dict(cfg)}}, f)
