[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "treesync"
version = "0.1.0"
description = "Directory tree diffing, change application and cp -a style copying with include/exclude patterns"
requires-python = ">=3.10"
dependencies = []
keywords = ["filesystem", "diff", "copy", "sync", "directory", "metadata", "patterns", "chmod"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["treesync"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
