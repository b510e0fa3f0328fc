"""
工具模块
包含数据结构、格式转换、配置和日志等实用工具
"""

from .data_converter import ImageProcessor
from .config_manager import ConfigManager, DEFAULT_CONFIG
from .logger import setup_logging

__all__ = [
    'ImageProcessor',
    'ConfigManager',
    'DEFAULT_CONFIG',
    'setup_logging'
]
