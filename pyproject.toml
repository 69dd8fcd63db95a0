[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clawlite"
version = "0.1.0"
description = "Building blocks for a small chat assistant, with a WSGI chat endpoint that runs the codex CLI per conversation"
requires-python = ">=3.10"
dependencies = []
keywords = ["chat", "assistant", "codex", "proxy", "wsgi", "llm"]
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
    "Topic :: Communications :: Chat",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["clawlite"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
