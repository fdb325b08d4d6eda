[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "xrayr"
version = "0.1.0"
description = "Clients for proxy panel APIs: fetch node and user configuration, report traffic, status and rule hits"
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = ["proxy", "panel", "proxypanel", "pmpanel", "xray"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["xrayr"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
