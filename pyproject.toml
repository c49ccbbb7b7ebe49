[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "srcbatches"
version = "0.1.0"
description = "Repository resolution, workspace planning, git and Docker workspaces, and progress summaries for batch code changes"
requires-python = ">=3.10"
dependencies = []
keywords = ["batch changes", "code search", "workspaces", "docker", "git", "graphql"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Operating System :: MacOS",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development",
    "Topic :: Software Development :: Version Control :: Git",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["srcbatches"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
