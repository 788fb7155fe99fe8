[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "brokkr"
version = "1.3.10"
description = "ODIN download-mode protocol, PIT parsing, image discovery and multi-device flashing"
requires-python = ">=3.10"
dependencies = []
keywords = ["odin", "pit", "flashing", "firmware", "download-mode", "lz4"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["brokkr"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
