# fieldsampling/utils/__init__.py

"""General utilities to support the functionalities of this package:

- `gpflow`: Provides kernel construction, weighted GP conditionals, and optimizers built on GPflow
- `metrics`: Provides utilities to quantify the field reconstruction quality
- `misc`: Provides grid construction helpers
"""
