from setuptools import setup, find_packages

setup(
    name="host-provisioner",
    version="0.1.0",
    description="Phase-ordered, idempotent provisioning of a single host.",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2",
        "PyYAML",
        "rich",
        "typer",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "provisioner=provisioner.cli:main",
        ],
    },
)
