from setuptools import setup

setup(
   name='Dcpse',
   version='0.2.0',
   author='ddrous',
   author_email='desmond.ngueguin@gmail.com',
   packages=['dcpse', 'dcpse.tests'],
   url='http://pypi.python.org/pypi/Dcpse/',
   license='LICENSE.md',
   description='Meshless DC-PSE differential operators on clouds of particles',
   long_description=open('README.md', encoding="utf-8").read(),
   install_requires=[
       "numpy",
       "scikit-learn",
       "jax >= 0.4.1",
       "lineax",
       "pytest",
       "matplotlib>=3.4.0",
       "seaborn",
   ],
)
