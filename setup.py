#!/usr/bin/env python3
"""KALIGN - Setup Configuration"""

from setuptools import setup, find_packages
import os

def get_version():
    return '1.0.0'

def get_long_description():
    readme_file = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_file):
        with open(readme_file, 'r', encoding='utf-8') as f:
            return f.read()
    return ''

setup(
    name='kalign',
    version=get_version(),
    author='KALIGN developers',
    description='Online Kalman-filter alignment of tracking detectors',
    long_description=get_long_description(),
    long_description_content_type='text/markdown',
    packages=find_packages(where='.', include=['kalign', 'kalign.*']),
    python_requires='>=3.8',
    install_requires=[
        'numpy>=1.21.0',
        'scipy>=1.7.0',
        'pyyaml>=5.4',
    ],
    extras_require={
        'dev': ['pytest>=7.0.0', 'pytest-cov>=4.0.0'],
    },
    entry_points={
        'console_scripts': ['kalign-demo=kalign.demo:main'],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'License :: OSI Approved :: GNU Affero General Public License v3',
        'Programming Language :: Python :: 3',
        'Topic :: Scientific/Engineering :: Physics',
    ],
    keywords=['alignment', 'tracking', 'kalman-filter', 'detector'],
)
