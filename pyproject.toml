[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kubesentry"
version = "0.1.0"
description = "Cluster security operator building blocks: configuration, continuous scanning, admission rules, rule bindings and alert export."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kubernetes",
    "admission-webhook",
    "security",
    "continuous-scanning",
    "runtime-alerts",
    "operator",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["kubesentry"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
