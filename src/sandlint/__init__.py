"""sandlint: a lint engine that runs untrusted rules in WebAssembly sandboxes."""

__version__ = "0.1.0"
