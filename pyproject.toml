[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "piccante"
version = "0.1.0"
description = "CAN bus tooling: bus management, an SLCAN protocol handler, persistent settings and a levelled logger"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "canbus", "slcan", "lawicel", "can232", "automotive"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["piccante"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"
