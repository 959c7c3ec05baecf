from setuptools import setup, find_packages

with open('README.md', 'r') as readme:
    long_description = readme.read()

setup(
    name='volMC', 
    version='1.0.0', 
    author='Dorian Bichet', 
    author_email='dbichet@insa-toulouse.fr', 
    description='Marching cubes iso-surface extraction from image stacks', 
    long_description=long_description, 
    long_description_content_type='text/markdown', 
    package_dir={'': 'src'}, 
    packages=find_packages('src'), 
    python_requires='>=3.9', 
    install_requires=['numpy', 'numba', 'scipy', 'matplotlib', 'meshio', 'tqdm', 'pyvista'], 
    extras_require={'test': ['pytest']}, 
    classifiers=['Programming Language :: Python :: 3', 
                 'Operating System :: OS Independent', 
                 'License :: OSI Approved :: CEA CNRS Inria Logiciel Libre License, version 2.1 (CeCILL-2.1)'], 
    
)
