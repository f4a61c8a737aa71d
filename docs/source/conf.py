import os
import sys
sys.path.insert(0, os.path.abspath('../..'))  # points to repo root

# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# Importing the service modules reads their configuration
os.environ.setdefault("DATABASE_URL", "sqlite:///./docs_build.db")

# -- Project information -----------------------------------------------------

project = 'Room Reservations'
copyright = '2026, Room Reservations contributors'
author = 'Room Reservations contributors'
release = '1.0.0'

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",   # numpy-style docstrings
    "sphinx.ext.viewcode",
]
autodoc_member_order = "bysource"

templates_path = []
exclude_patterns = []

# -- Options for HTML output -------------------------------------------------

html_theme = 'alabaster'
