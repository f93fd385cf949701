[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hovercraft"
version = "0.1.0"
description = "In-process simulation of a switch-assisted, Raft-style replication pipeline with a network aggregator"
requires-python = ">=3.10"
dependencies = []
keywords = ["consensus", "raft", "replication", "simulation", "distributed-systems", "latency"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
hovercraft = "hovercraft.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["hovercraft"]

[tool.pytest.ini_options]
addopts = "-ra"
