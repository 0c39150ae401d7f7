"""
This script configures the installation of the 'testfarm' Python package using setuptools.
Defines the package metadata, dependencies, and entry points for the command-line interface (CLI).
The CLI command 'testfarm' is linked to the 'cli.testfarm' function, which runs test suites
across a pool of build machines over SSH.

Run 'pip install -e .' to install the package in editable mode for development purposes.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="testfarm",
    version="0.1.0",
    description="Fan test suites out across build machines over SSH",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
    ],
    python_requires=">=3.8",
    install_requires=[
        "paramiko",
        "omegaconf",
        "click",
        "rich",
        "PyYAML",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["testfarm=testfarm.cli:testfarm"],
    },
)
