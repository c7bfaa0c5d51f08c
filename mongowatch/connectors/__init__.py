"""
Source connectors.
"""
