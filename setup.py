from setuptools import setup, find_packages

setup(
    name="strangeness_reco",
    version="0.1.0",
    description="V0 and cascade decay-vertex reconstruction from helix track parameters",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "scipy",
        "orjson",
    ],
    extras_require={
        # Optional speed/profiling stack
        "speed": [
            "scalene>=1.5.49; platform_system != 'Windows'",
            "py-spy>=0.3.14",
        ],
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "strangeness-reco=strangeness_reco.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
