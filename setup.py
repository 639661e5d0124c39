from setuptools import setup, find_packages

setup(
    name="cobot_control",
    version="0.1.0",
    description="Serial control session for a six-joint COBOT arm: connection, telemetry and joint commands",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    python_requires=">=3.8",
    install_requires=[
        "pyserial",
        "numpy",
    ],
)
