"""
lampod - Off-chain payment orchestration for Lampo nodes.

Issues BOLT11 invoices, pays them and sends keysend payments through a
pluggable channel engine, bounding every payment by a local deadline.
"""

__version__ = "0.1.0"
