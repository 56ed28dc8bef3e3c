from setuptools import setup
import os
import re

# Function to extract version from __init__.py
def get_version(package):
    """Return package version as listed in `__version__` in `init.py`."""
    init_py_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), package, '__init__.py')
    if not os.path.exists(init_py_path):
        raise RuntimeError(f"Unable to find __init__.py in {package}.")

    with open(init_py_path, 'r', encoding='utf-8') as f:
        init_py = f.read()

    match = re.search("__version__ = ['\"]([^'\"]+)['\"]", init_py)
    if match:
        return match.group(1)
    raise RuntimeError(f"Unable to find __version__ string in {init_py_path}")

version = get_version('.')

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

setup(
    name="vidrich",
    version=version,
    description="Multi-strategy YouTube video metadata enrichment service",
    long_description=long_description,
    long_description_content_type="text/markdown",
    # Flat layout: top-level modules imported by bare name
    py_modules=[
        "config",
        "exceptions",
        "logging_config",
        "models",
        "utils",
        "cache_manager",
        "ledger",
        "main",
        "server",
    ],
    packages=["services", "api"],
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": ["pytest", "respx"],
    },
    entry_points={
        "console_scripts": [
            "vidrich=server:main",
        ],
    },
)
