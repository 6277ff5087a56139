[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "p2pgit"
version = "0.1.0"
description = "Peer-to-peer sharing of Git repositories over a local network, with a pure-Python repository backend."
requires-python = ">=3.10"
dependencies = [
    "pynacl",
]
keywords = ["git", "p2p", "peer-to-peer", "lan", "discovery", "bundle", "version control"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Version Control :: Git",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
p2pgit = "p2pgit.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["p2pgit"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
