from setuptools import setup, find_packages

setup(
    name="urevo-scale",
    version="0.1.0",
    packages=find_packages(include=["urevo", "urevo.*"]),
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "bleak>=0.21",   # passive BLE scan of the scale advertisements
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "urevo-scale=urevo.main:main"
        ]
    },
)
