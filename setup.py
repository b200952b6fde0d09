from setuptools import setup, find_packages

setup(
    name="tube_detection",
    version="0.1",
    packages=find_packages(exclude=['tests']),
    py_modules=['run_tube_detection'],
    install_requires=[
        'numpy',
        'SimpleITK',
        'scipy',
        'tqdm'
    ],
    extras_require={
        'dev': ['pytest']
    },
    entry_points={
        'console_scripts': [
            'tube-detection=run_tube_detection:main'
        ]
    },
)
