"""Setup script for the stproc package."""

import re
from setuptools import setup, find_packages

# Read the long description from README.md
with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

# Read requirements from requirements.txt
with open("requirements.txt") as f:
    requirements = [line for line in f.read().splitlines() if line and not line.startswith("#")]


def get_version():
    """Read the version from the package so it is defined in one place."""
    with open("stproc/__init__.py", encoding="utf-8") as f:
        content = f.read()
    version_match = re.search(r'__version__ = "([^"]+)"', content)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version in stproc/__init__.py")


setup(
    name="stproc",
    version=get_version(),
    description="Stored-procedure execution runtime with connection pooling, retries and execution reports",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["stproc", "stproc.*"]),
    install_requires=requirements,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
    ],
    python_requires=">=3.9",
    keywords="mysql, stored procedures, connection pool, retry, asyncio",
    extras_require={
        "dev": [
            "pytest>=7.3.1",
            "pytest-asyncio>=0.21.0",
        ],
    },
)
