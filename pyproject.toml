[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "workqueue"
version = "0.1.0"
description = "A keyed workqueue with priorities, not-before scheduling, backoff, dead-lettering and a concurrent dispatcher"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "workqueue",
    "queue",
    "dispatcher",
    "backoff",
    "dead-letter",
    "wsgi",
    "reconciler",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["workqueue"]

[tool.hatch.build.targets.sdist]
include = ["workqueue", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
