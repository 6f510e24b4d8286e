"""Standard library of hexship: the libs and the built-in adapters.

Libs (``hexship.stdlib.lib``) hold the stateful services the engine
composes. Adapters (``hexship.stdlib.adapters``) implement the kernel ports
and are selected by alias through :mod:`hexship.kernel.resolver`.
"""
