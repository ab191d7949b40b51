"""
Palm Pay: camera-based palm-code capture and checkout authorization.
Hold your palm in front of the camera; the client derives a reusable
palm code from the capture and submits it to the ledger service as the
payment credential for an order or a wallet top-up.
"""

__version__ = "0.1.0"
__author__ = "palm_pay"
