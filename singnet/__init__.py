"""
singnet - sing-box VPN manager with subscriptions, a local API and hub control
"""

__version__ = '1.0.0'
