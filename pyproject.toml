[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "brubeck"
version = "0.1.0"
description = "A statsd-compatible metrics aggregator that forwards to Carbon and Datadog"
requires-python = ">=3.10"
dependencies = []
keywords = ["statsd", "metrics", "graphite", "carbon", "datadog", "aggregation", "monitoring"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
brubeck = "brubeck.cli:main"
brubeck-balancer = "brubeck.balancer:main"
brubeck-udp-stress = "brubeck.stress:main"
brubeck-secure-send = "brubeck.secure_send:main"

[tool.hatch.build.targets.wheel]
packages = ["brubeck"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
