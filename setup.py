#!/usr/bin/env python3
"""
Setup script for Sandbox Relay package
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8')

# Read requirements
requirements = []
with open(this_directory / 'requirements.txt', 'r') as f:
    for line in f:
        line = line.strip()
        if line and not line.startswith('#'):
            requirements.append(line)

test_requirements = [
    "pytest>=7.0.0",
    "pytest-asyncio>=0.23",
    "httpx",  # FastAPI TestClient
]

setup(
    name="sandbox-relay",
    version="0.1.0",
    description="One Docker sandbox per chat thread: provision, exec, harvest workspace files, evict",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["sandbox_relay", "sandbox_relay.*"]),
    python_requires=">=3.11",
    install_requires=requirements,
    extras_require={
        "test": test_requirements,
        "dev": test_requirements + [
            "black",
            "flake8",
            "mypy",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    entry_points={
        "console_scripts": [
            "sandbox-relay=sandbox_relay.main:main",
        ],
    },
)
