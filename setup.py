from setuptools import setup, find_packages

setup(
    name="palm_pay",
    version="0.1.0",
    description="Palm-code capture and checkout authorization client",
    packages=find_packages(exclude=["tests"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "opencv-python>=4.8",
        "httpx>=0.27",
        "pydantic>=2.6",
    ],
    extras_require={
        "dev": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "palm-pay=main:main",
        ]
    },
)
