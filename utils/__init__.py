# utils/__init__.py

from utils.logger import logger, configure_file_logging, mask
from utils.config import load_cfg

__all__ = ["logger", "configure_file_logging", "mask", "load_cfg"]
