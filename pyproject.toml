[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tunnelkit"
version = "0.1.0"
description = "Stackable proxy tunnel layers: SOCKS5 and HTTP front ends, port forwarding, direct dialing, rule-based routing and per-user traffic accounting."
requires-python = ">=3.10"
dependencies = [
    "pymysql",
]
keywords = ["proxy", "socks5", "http-proxy", "tunnel", "router", "port-forwarding", "traffic"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Proxy Servers",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["tunnelkit"]

[tool.hatch.build.targets.sdist]
include = ["tunnelkit", "tests", "pyproject.toml", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
