[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sipflow"
version = "1.8.2"
description = "Link-layer decoding, IP/TCP reassembly, WebSocket unwrapping and HEP/EEP encapsulation for SIP traffic"
requires-python = ">=3.10"
dependencies = [
    "psutil",
]
keywords = [
    "sip",
    "voip",
    "hep",
    "eep",
    "reassembly",
    "ip-fragmentation",
    "tcp",
    "websocket",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Telephony",
    "Topic :: System :: Networking :: Monitoring",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["sipflow"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
