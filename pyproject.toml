[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "casebook"
version = "0.1.0"
description = "Worked backend engineering cases: load balancing, adaptive retry, VIP rate limiting, top-N ranking caches, cache failover, coupon stock and message consumers."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "load-balancing",
    "rate-limiting",
    "retry",
    "ranking",
    "cache",
    "failover",
    "consumer",
    "top-n",
    "cron",
]
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
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
casebook-server = "casebook.middleware:main"

[tool.hatch.build.targets.wheel]
packages = ["casebook"]

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
warn_redundant_casts = true
