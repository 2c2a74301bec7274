[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dnsmux"
version = "0.1.0"
description = "DNS upstream transports, bootstrap resolver, zone file matcher and DNS servers over UDP, TCP and HTTP"
requires-python = ">=3.10"
keywords = ["dns", "doh", "dot", "resolver", "forwarder", "pipeline", "zone"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "dnspython",
    "cryptography",
    "httpx[http2]",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["dnsmux"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
