[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "secretree"
version = "0.1.0"
description = "Encrypt the values of structured documents while keeping their keys readable, with PGP master keys and Shamir key splitting."
requires-python = ">=3.10"
keywords = ["encryption", "secrets", "pgp", "gnupg", "shamir", "vault", "mac"]
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
    "Topic :: Security :: Cryptography",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["secretree"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
