"""版本信息"""

__version__ = "0.3.0b0"

VERSION_INFO = {
    'major': 0,
    'minor': 3,
    'patch': 0,
    'status': 'beta',   # dev, alpha, beta, rc, stable
    'opencv_min': '4.5',
}

_STATUS_SUFFIX = {'dev': '.dev0', 'alpha': 'a0', 'beta': 'b0', 'rc': 'rc0', 'stable': ''}


def get_version_string(with_status: bool = True) -> str:
    """版本字符串，例如 0.3.0b0"""
    base = f"{VERSION_INFO['major']}.{VERSION_INFO['minor']}.{VERSION_INFO['patch']}"
    if not with_status:
        return base
    return base + _STATUS_SUFFIX.get(VERSION_INFO['status'], '')
