[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "promexport"
version = "0.1.0"
description = "A metrics recorder that renders the Prometheus text exposition format, serves it over HTTP or pushes it to a push gateway."
requires-python = ">=3.10"
dependencies = []
keywords = ["metrics", "prometheus", "telemetry", "exporter", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
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
test = ["pytest", "hypothesis"]

[tool.hatch.build.targets.wheel]
packages = ["promexport"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
