"""
lampowallet - BIP84 on-chain wallet for Lampo nodes.

Key management, chain synchronization with reorg detection, and
construction of RBF-signalling P2WPKH spends.
"""

__version__ = "0.1.0"
