#!/usr/bin/env python

from setuptools import setup
import os.path


try:
    DIR = os.path.abspath(os.path.dirname(__file__))
    with open(os.path.join(DIR, "README.md"), encoding='utf-8') as f:
        long_description = f.read()
except Exception:
    long_description=None


setup(
    name="zipfetch",
    version="0.1.0",
    description="Stream zip archives of remote files without buffering them",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="LGPLv3",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: OS Independent",
        "Topic :: System :: Archiving",
        "License :: OSI Approved :: GNU Lesser General Public License v3 (LGPLv3)"
    ],
    packages=["zipfetch"],
    entry_points={
        "console_scripts": ["zipfetch-server=zipfetch.server:main"]
    },
    python_requires=">=3.8.0",
    install_requires=["requests"],
    extras_require={
        "tests": ["pytest", "pytest-cov"],
    },
)
