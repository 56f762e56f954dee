[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "wgobfs"
version = "1.1.0"
description = "UDP relay that obfuscates WireGuard traffic with a shared key"
requires-python = ">=3.10"
dependencies = []
keywords = ["wireguard", "obfuscation", "udp", "proxy", "vpn"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
wg-obfuscator = "wgobfs.proxy:main"

[tool.hatch.build.targets.wheel]
packages = ["wgobfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
