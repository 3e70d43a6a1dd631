[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "qflash"
version = "0.1.0"
description = "Firmware upgrade helpers for cellular modules: AT response tokenizer, fastboot client and firmware package reader"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "fastboot",
    "at-commands",
    "modem",
    "firmware",
    "flashing",
    "usb",
    "embedded",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems",
    "Topic :: Communications :: Telephony",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
qflash-fastboot = "qflash.fastboot.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["qflash"]

[tool.hatch.build.targets.sdist]
include = ["qflash", "tests", "README.md", "pyproject.toml"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
