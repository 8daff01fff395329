from setuptools import setup, find_packages


setup(
    name="dmpacker",
    version="0.1",
    packages=find_packages(include=["dmpacker", "dmpacker.*"]),
    description="Packs data model CSV directories into verified, optionally encrypted archives.",
    author="vercingetorx",
    python_requires=">=3.8",
    install_requires=[
        "pycryptodomex>=3.23.0",
        "requests>=2.31.0",
    ],
    entry_points={
        "console_scripts": [
            "dmpacker=dmpacker.cli:main",
        ]
    },
)
