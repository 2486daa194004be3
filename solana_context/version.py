"""Version information for the Solana context engine."""

__version__ = "0.1.0"
__author__ = "Solana Context Engine Developers"
__email__ = "dev@solana-context.example"
