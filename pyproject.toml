[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "feedkeeper"
version = "0.1.0"
description = "Scheduled RSS and Atom scraping with deduplication, and time-partitioned feed blocks"
requires-python = ">=3.11"
dependencies = [
    "defusedxml",
]
keywords = ["rss", "atom", "feed", "scraper", "storage", "aggregator"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["feedkeeper"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
