"""
日志初始化
"""

import logging
from pathlib import Path
from typing import Optional, Union

LOGGER_NAME = 'ARTracker'


def setup_logging(level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """初始化日志系统：控制台输出，可选写入文件"""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """获取 ARTracker 层级下的子日志器"""
    return logging.getLogger(f'{LOGGER_NAME}.{name}')
