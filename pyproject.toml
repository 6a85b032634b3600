[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vcpuref"
version = "0.1.0"
description = "Building blocks for preparing a virtual machine and its vCPUs for boot: guest memory, GDT, CPUID, MSRs, LAPIC and GIC state."
requires-python = ">=3.10"
dependencies = []
keywords = ["virtualization", "kvm", "vcpu", "gdt", "gic", "msr", "cpuid", "lapic"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = [
    "pytest",
    "hypothesis",
]

[tool.hatch.build.targets.wheel]
packages = ["vcpuref"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
