[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mictcp"
version = "0.1.0"
description = "A small TCP-like transport with negotiated partial reliability over UDP, with client, server and video gateway tools"
requires-python = ">=3.10"
dependencies = []
keywords = ["tcp", "udp", "transport", "protocol", "partial reliability", "networking", "education"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
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
mictcp-client = "mictcp.client:main"
mictcp-server = "mictcp.server:main"
mictcp-gateway = "mictcp.gateway:main"

[tool.hatch.build.targets.wheel]
packages = ["mictcp"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
