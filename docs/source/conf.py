# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Project information -----------------------------------------------------

project = 'torch-bcg'
copyright = '2026, torch-bcg developers'
author = 'torch-bcg developers'
release = '0.1.0'

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
    'sphinx.ext.mathjax',
]
import os
import sys
sys.path.insert(0, os.path.abspath('../../'))

templates_path = ['_templates']

# numpy style docstrings
napoleon_google_docstring = False
napoleon_numpy_docstring = True

# -- Options for HTML output -------------------------------------------------
html_theme = 'furo'
html_title = "torch-bcg: Block Conjugate Gradient for PyTorch"
exclude_patterns = ['setup.py', '__init__.py']
autodoc_member_order = 'bysource'
