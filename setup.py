from setuptools import setup, find_packages

setup(
    name='dashvault',
    version='0.1.0',
    packages=find_packages(where='src'),
    package_dir={'': 'src'},
    python_requires='>=3.10',
    install_requires=[
        'psutil',
        'redis',
        'termcolor',
        'gpiozero',
        'watchdog',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'dashvault=dashvault.main:main',
        ],
    },
)
