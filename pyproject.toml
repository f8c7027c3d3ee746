[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "jobwatch"
version = "0.1.0"
description = "Run periodic background tasks with retries and report their status over HTTP"
requires-python = ">=3.10"
dependencies = [
    "aiohttp>=3.9",
]
keywords = ["monitoring", "background-tasks", "health-check", "status-page", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Framework :: aiohttp",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
jobwatch-leaderboard = "jobwatch.leaderboard:main"

[tool.hatch.build.targets.wheel]
packages = ["jobwatch"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
