[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tabular_pfn"
version = "0.1.0"
description = "Building blocks of a prior-fitted transformer for tabular data: model configuration, NaN-aware preprocessing and multi-head attention on NumPy arrays"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["tabular", "transformer", "attention", "prior-fitted network", "numpy", "normalization"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["tabular_pfn"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
