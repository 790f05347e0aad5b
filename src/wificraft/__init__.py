"""wificraft - configuration-as-code apply engine for cloud-managed APs, switches and gateways."""

__version__ = "0.1.0"
