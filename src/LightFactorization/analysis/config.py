"""Read-in the probe configuration lazily and give global access
to it. Command line arguments are applied on top with ProbeConfig.with_overrides.
"""

import configparser
import dataclasses
import io
from dataclasses import dataclass
from typing import Optional

from LightFactorization.analysis.core.execution import ExecutionStrategy, make_strategy

DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or value.strip().lower() in ("", "none"):
        return None
    return int(value)


@dataclass
class ProbeConfig:
    """Settings of a probe analysis run."""
    scale: float = 1.0  # Projection normalization, an integration concern of the caller
    strategy: str = "sequential"  # "sequential" or "parallel"
    device: str = "auto"  # "auto", "cpu", "cuda", "cuda:1", ...
    block_rows: Optional[int] = None  # Rows per parallel block, None for one block
    n_workers: Optional[int] = None  # Parallel threads, None for cpu_count()
    output_dir: str = "experiments"
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT

    @classmethod
    def from_parser(cls, parser: configparser.ConfigParser) -> "ProbeConfig":
        defaults = cls()
        return cls(
            scale=parser.getfloat("probe", "scale", fallback=defaults.scale),
            strategy=parser.get("execution", "strategy", fallback=defaults.strategy),
            device=parser.get("execution", "device", fallback=defaults.device),
            block_rows=_optional_int(parser.get("execution", "block_rows", fallback=None)),
            n_workers=_optional_int(parser.get("execution", "n_workers", fallback=None)),
            output_dir=parser.get("output", "output_dir", fallback=defaults.output_dir),
            log_level=parser.get("logging", "level", fallback=defaults.log_level),
            log_format=parser.get("logging", "format", fallback=defaults.log_format, raw=True),
        )

    def with_overrides(self, **overrides) -> "ProbeConfig":
        """Copy with every override that is not None applied."""
        return dataclasses.replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def make_strategy(self) -> ExecutionStrategy:
        return make_strategy(self.strategy, device=self.device, block_rows=self.block_rows, n_workers=self.n_workers)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return dataclasses.asdict(self)


class Config:
    __conf = None

    __config_path = "config.ini"
    __loaded_path = None

    @staticmethod
    def log_config(logger=None):
        if logger is None:
            out_func = print
        else:
            out_func = logger.info

        with io.StringIO() as ss:
            Config.get_config().write(ss)
            ss.seek(0)  # rewind

            out_func(f"Configuration loaded from file {Config.__loaded_path} was:")
            out_func(ss.read())

    @staticmethod
    def get_config(config_path=None) -> configparser.ConfigParser:
        # Asking for another file than the cached one reads it in its place
        if config_path is not None and str(config_path) != str(Config.__loaded_path):
            Config.reset()

        if Config.__conf is None:
            # Interpolation would trip over the %(...)s fields of the log format
            Config.__conf = configparser.ConfigParser(interpolation=None)

            if config_path is None:
                config_path = Config.__config_path

            # A missing file leaves every setting at its default
            Config.__conf.read(config_path)
            Config.__loaded_path = config_path

        return Config.__conf

    @staticmethod
    def reset():
        Config.__conf = None
        Config.__loaded_path = None


def load_config(config_path=None) -> ProbeConfig:
    """
    ProbeConfig from the (cached) ini file. Without a path the cached file,
    or config.ini when nothing was read yet, is used.
    """
    return ProbeConfig.from_parser(Config.get_config(config_path))
