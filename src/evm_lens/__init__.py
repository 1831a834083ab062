"""Static bytecode analysis engine for EVM smart contracts."""

__version__ = "0.1.0"
