[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "flightpath"
version = "0.1.0"
description = "Bridge MAVLink telemetry from a drone to streaming HTTP services for ground-control clients."
requires-python = ">=3.10"
keywords = ["mavlink", "px4", "drone", "telemetry", "gcs", "connect", "streaming", "wsgi"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Interface Engine/Protocol Translator",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]
dependencies = [
    "pyserial",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
flightpath-server = "flightpath.app:main"
flightpath-monitor = "flightpath.monitor_client:main"

[tool.hatch.build.targets.wheel]
packages = ["flightpath"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
