from setuptools import setup, find_packages

setup(
    name="stackbackup",
    version="0.1.0",
    description="Database, volume and config snapshots with per-kind retention for a single-node container stack",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    package_data={"stackbackup": ["default.yaml"]},
    install_requires=[
        "click>=8.0.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "stackbackup=stackbackup.cli:main",
        ],
    },
    python_requires=">=3.8",
)
