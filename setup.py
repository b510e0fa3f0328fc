"""
AR Tracker Package Setup
"""

from setuptools import setup, find_packages
from pathlib import Path

# 读取README文件
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text() if (this_directory / "README.md").exists() else ""

# 版本信息（与 ar_tracker/version.py 保持一致）
version = "0.3.0b0"

setup(
    name="ar-tracker",
    version=version,
    author="AR Tracker Team",
    description="Marker-based and markerless camera pose tracking for augmented reality",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["ar_tracker", "ar_tracker.*"]),
    py_modules=["run_tracker"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Image Recognition",
        "Topic :: Multimedia :: Graphics :: 3D Rendering",
    ],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.19.0",
        "opencv-python>=4.5.0",
        "pyyaml>=5.4",
    ],
    extras_require={
        "dev": [
            "pytest>=6.0",
            "pytest-cov>=2.10",
            "black>=21.0",
            "flake8>=3.8",
            "mypy>=0.8",
        ],
    },
    entry_points={
        "console_scripts": [
            "ar-tracker=run_tracker:main",
        ],
    },
    data_files=[("configs", ["configs/default.yaml", "configs/adhoc.yaml"])],
    zip_safe=False,
)
