from setuptools import setup, find_packages


setup(
    name='torch_bcg',
    version='0.1.0',
    packages=find_packages(include=['torch_bcg', 'torch_bcg.*']),
    install_requires=[
        'torch>=1.13.0',
    ],
    extras_require={
        'test':['pytest','numpy','scipy'],
        'docs':['sphinx', 'furo'],
        'bench':['matplotlib']
    }
)
