[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "resgw"
version = "0.1.0"
description = "Client connection and resource subscription core of a realtime API gateway"
requires-python = ">=3.10"
dependencies = []
keywords = ["realtime", "api", "gateway", "websocket", "subscription", "resources"]
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
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["resgw"]

[tool.pytest.ini_options]
addopts = "-ra"
