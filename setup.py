from setuptools import setup, find_packages

setup(
    name="nano-brew",
    version="0.0.1",
    description="A layer-graph training tool with multi-device solvers and cross-device layer verification",
    author="lastweek",
    packages=find_packages(include=["brew", "brew.*"]),
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.4.0",
        "numpy>=1.24.0",
        "omegaconf>=2.3.0",
        "tensorboard>=2.15.0",
        "tqdm>=4.66.0",
        "pyyaml>=6.0",
    ],
    extras_require={
        "dev": ["pytest>=7.4.0"],
    },
    entry_points={
        "console_scripts": [
            "brew=brew.cli:main",
        ],
    },
)
