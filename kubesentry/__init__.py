"""Security operator building blocks: configuration, resource watches, scan commands, admission rules and webhook, rule bindings and alert export."""

__version__ = "0.1.0"