"""Sphinx configuration for pepsad documentation."""

import warnings

project = "pepsad"
copyright = "2026, pepsad Contributors"
author = "pepsad Contributors"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
    "sphinx.ext.viewcode",
    "sphinx.ext.mathjax",
    "sphinx_autodoc_typehints",
    "sphinx_copybutton",
    "myst_parser",
    "sphinx_design",
]

# Autodoc
autodoc_member_order = "bysource"
autodoc_typehints = "description"
autodoc_default_options = {
    "members": True,
    "undoc-members": False,
    "show-inheritance": True,
}

# Napoleon (Google-style docstrings)
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_use_rtype = False

# MyST (Markdown support)
myst_enable_extensions = [
    "amsmath",
    "dollarmath",
    "colon_fence",
    "deflist",
]

# Intersphinx
intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "jax": ("https://jax.readthedocs.io/en/latest/", None),
    "numpy": ("https://numpy.org/doc/stable/", None),
    "optax": ("https://optax.readthedocs.io/en/latest/", None),
    "networkx": ("https://networkx.org/documentation/stable/", None),
}

# Theme
html_theme = "furo"
html_title = "pepsad: differentiable PEPS contraction"
html_short_title = "pepsad"
html_theme_options = {
    "navigation_with_keys": True,
    "sidebar_hide_name": False,
}
pygments_style = "friendly"
pygments_dark_style = "monokai"

# MathJax macros for bra-ket notation
mathjax3_config = {
    "tex": {"macros": {"ket": ["\\left|#1\\right\\rangle", 1],
                       "bra": ["\\left\\langle#1\\right|", 1]}},
}

# Type hints
typehints_fully_qualified = False
typehints_use_signature_return = True
autodoc_type_aliases = {
    "Network": "pepsad.network.network.Network",
    "LossAndGrad": "pepsad.algorithms.optimize.LossAndGrad",
}

# Source
source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}
exclude_patterns = ["_build"]

# Suppress third-party deprecation warnings during build
warnings.filterwarnings(
    "ignore", category=DeprecationWarning, module="sphinx_autodoc_typehints"
)
