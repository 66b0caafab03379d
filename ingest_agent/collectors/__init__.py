"""
Built-in collector plugins.

Every public module in this package is imported by ``discover_plugins`` at
startup; plugins register through ``@register_plugin``.
"""
