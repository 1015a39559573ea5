[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ofinet"
version = "0.1.0"
description = "EC2 platform defaults, endpoint checks, rail ordering and NIC topology grouping for fabric-based collective communication"
requires-python = ">=3.10"
dependencies = []
keywords = ["collectives", "topology", "pci", "fabric", "efa", "hpc", "nic"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
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

[tool.hatch.build.targets.wheel]
packages = ["ofinet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
