#!/usr/bin/env python3
"""Setup script for cloudnav."""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="cloudnav",
    version="0.1.0",
    description="Cloud storage browser and downloader for Linux",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.10",
    install_requires=[
        "httpx[http2]>=0.25.0",
        "aiohttp>=3.9.0",
        "tenacity>=8.2.0",
        "PyGObject>=3.42.0",
        "python-dateutil>=2.8.2",
        "cryptography>=41.0.0",
        "keyring>=24.0.0",
        "certifi>=2023.7.22",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "cloudnav=cloudnav.cli:main",
            "cloudnav-gui=cloudnav.gui:main",
        ],
    },
)
