#!/usr/bin/env python
from __future__ import annotations

import setuptools

if __name__ == "__main__":
    if int(setuptools.__version__.split(".")[0]) < 61:
        print("Please upgrade setuptools to at least version 61.0.0")
        exit(1)

    setuptools.setup(
        name="foreground-child",
        version="0.1.0",
        description="Run a child process as if it were running in the foreground of its parent",
        python_requires=">=3.8",
        package_dir={"": "src"},
        packages=setuptools.find_packages("src"),
        install_requires=[
            "click",
            "typing_extensions",
        ],
        extras_require={
            "test": [
                "pytest",
                "hypothesis",
            ],
        },
        classifiers=[
            "Operating System :: POSIX",
            "Programming Language :: Python :: 3",
        ],
    )
