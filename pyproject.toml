[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "chatrelay"
version = "0.1.0"
description = "A small chat relay server: online-user hand-off, message routing, offline delivery, friend lookup and file exchange."
requires-python = ">=3.10"
dependencies = []
keywords = ["chat", "server", "udp", "tcp", "messaging", "file-transfer"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Chat",
    "Topic :: Internet",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
chatrelay = "chatrelay.layout:main"

[tool.setuptools]
packages = ["chatrelay"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
