[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "cadbatch"
version = "0.10.0"
description = "Building blocks for batch analysis of CAD drawings through a multimodal chat model: retrying sessions, circuit breaker, dead letter queue, adaptive concurrency, resumable progress and result merging"
requires-python = ">=3.10"
dependencies = [
    "pillow",
]
keywords = ["cad", "drawing", "batch", "pdf", "circuit-breaker", "multimodal", "dead-letter-queue"]
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
    "Topic :: Scientific/Engineering :: Image Recognition",
    "Framework :: AsyncIO",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["cadbatch"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
