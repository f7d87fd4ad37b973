from setuptools import find_packages, setup

setup(
    name="replbridge",
    version="0.1.0",
    description="Editor bridge to Clojure nREPL and prepl servers",
    packages=find_packages(include=["replbridge", "replbridge.*"]),
    python_requires=">=3.9",
    install_requires=[],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "replbridge=replbridge.cli:main",
        ],
    },
)
