from setuptools import setup, find_packages
import os


def read_requirements():
    with open(os.path.join(os.path.dirname(__file__), "requirements.txt"), encoding="utf-8") as f:
        return f.read().splitlines()


setup(
    name="flagkit",
    version="0.1.0",
    description="Feature flag evaluation with targeting rules and stable percentage rollouts",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"flagkit": ["config_schema.json", "default_flags.json"]},
    install_requires=read_requirements(),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: BSD License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.12",
)
