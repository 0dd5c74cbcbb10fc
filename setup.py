#!/usr/bin/env python
"""Setup script for Imago CLI tool."""

from setuptools import setup, find_packages

setup(
    name="imago",
    version="1.0.0",
    description="Generate images from text prompts with the Gemini image API and preview them in the terminal",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Imago Contributors",
    url="https://github.com/parkjangwon/imago",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.31.0",
        "rich>=13.0",
        "Pillow>=10.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
            "ruff>=0.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "imago=imago.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Topic :: Multimedia :: Graphics",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    keywords="gemini image-generation terminal cli",
)
