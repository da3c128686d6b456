"""
Binload Shared Module
=====================

Configuration, logging and console utilities shared by the binload
library and its command-line front end.
"""

from shared.config import BinloadConfig, GlobalConfig, LoaderConfig

__all__ = ["BinloadConfig", "GlobalConfig", "LoaderConfig"]
