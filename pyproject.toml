[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "telemetrynet"
version = "0.1.0"
description = "A small TCP telemetry relay: a server that rebroadcasts client telemetry packets and a client that tracks its peers"
requires-python = ">=3.10"
dependencies = []
keywords = ["telemetry", "tcp", "relay", "crc32c", "networking", "protocol"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
telemetrynet-server = "telemetrynet.server:main"
telemetrynet-client = "telemetrynet.client:main"

[tool.hatch.build.targets.wheel]
packages = ["telemetrynet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
