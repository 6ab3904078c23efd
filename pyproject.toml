[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "claudeops"
version = "1.0.0"
description = "Claude Code usage accounting: parse session logs, price tokens, keep aggregates in SQLite and serve them as MCP tools."
requires-python = ">=3.11"
dependencies = []
keywords = ["claude", "usage", "tokens", "cost", "monitoring", "sqlite", "mcp", "jsonl"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["claudeops"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
