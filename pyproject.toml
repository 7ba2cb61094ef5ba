[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hlsattn"
version = "0.1.0"
description = "Bit-accurate fixed-point model of transformer attention blocks for HLS design verification"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["hls", "fixed-point", "attention", "transformer", "npy", "npz", "fpga"]
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
    "Topic :: Scientific/Engineering :: Electronic Design Automation (EDA)",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
hlsattn-testbench = "hlsattn.testbench:main"

[tool.hatch.build.targets.wheel]
packages = ["hlsattn"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
