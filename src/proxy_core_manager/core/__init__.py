"""Core process and control-plane management.

This package contains the components that drive the external proxy core:
- Controller settings extraction from the core configuration
- The control-plane REST client
- Process supervision with log streaming and traffic monitoring
- The observer contract used to report events outward
- Exception hierarchy and settings

The CLI in ``proxy_core_manager.cmd`` is one consumer of this package; a GUI
front end would plug into the same observer contract.
"""
