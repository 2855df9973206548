[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vpnproxy"
version = "0.1.0"
description = "Multiplexed port forwarding, userspace TCP/UDP/Unix proxies and tunnel message framing"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "proxy",
    "port-forwarding",
    "multiplexer",
    "networking",
    "tunnel",
    "udp",
    "tcp",
    "iptables",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
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
vpnproxy-iptables-wrapper = "vpnproxy.iptables_wrapper:main"

[tool.hatch.build.targets.wheel]
packages = ["vpnproxy"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
