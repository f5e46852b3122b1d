[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pixiesort"
version = "0.1.0"
description = "Decode, time-sort and align list-mode data from Pixie-16 digitizer crates"
requires-python = ">=3.11"
dependencies = [
    "numpy",
    "scipy",
]
keywords = [
    "pixie-16",
    "digitizer",
    "nuclear physics",
    "list-mode",
    "event sorting",
    "timestamp alignment",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Physics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
pixiesort-decode = "pixiesort.decode:main"
pixiesort-offsets = "pixiesort.offsets:main"
pixiesort-fit-offsets = "pixiesort.fitting:main"

[tool.hatch.build.targets.wheel]
packages = ["pixiesort"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
