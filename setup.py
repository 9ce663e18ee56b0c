from setuptools import setup, find_packages

with open("requirements.txt") as f:
    required = f.read().splitlines()

setup(
    name="pastoralist",
    version="0.0.1",
    packages=find_packages("src"),
    package_dir={"": "src"},
    install_requires=required,
    extras_require={"test": ["pytest"]},
    python_requires=">=3.10",
    entry_points={"console_scripts": ["pastoralist = pastoralist.cli:main"]},
    description="Track why package.json overrides exist and prune the stale ones",
)
