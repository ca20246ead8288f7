from setuptools import setup, find_packages

setup(
    name='distforest',
    version='1.0',
    packages=find_packages(include=['distforest', 'distforest.*']),
    description='Random forests of distribution-aware decision trees',
    long_description=open('README.md').read(),
    long_description_content_type='text/markdown',
    python_requires='>=3.10',
    install_requires=[
        'numpy>=1.24',
        'joblib>=1.2',
    ],
    extras_require={
        'test': ['pytest>=7.0'],
        'experiments': ['pandas>=1.5', 'scikit-learn>=1.2'],
    },
)
