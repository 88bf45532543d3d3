"""Command line interface modules.

This package provides the command-line tools for:
- Starting the proxy core and watching its traffic live
- Inspecting the controller settings of a core configuration
- Issuing control-plane commands (version, delay probes, proxy switching, reload)
- Exporting the core's log output

The commands are thin wrappers around the supervisor and control-plane
client in ``proxy_core_manager.core``.
"""
