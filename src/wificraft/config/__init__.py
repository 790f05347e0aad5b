"""Settings, site configuration and template loading."""
from .settings import ApiSettings, WificraftSettings, find_settings_file
from .site import SiteConfiguration, SiteConfigLoader
from .templates import (
    TemplateStore,
    expand_for_vendor,
    deep_merge,
    vendor_from_api_label,
)

__all__ = [
    "ApiSettings",
    "WificraftSettings",
    "find_settings_file",
    "SiteConfiguration",
    "SiteConfigLoader",
    "TemplateStore",
    "expand_for_vendor",
    "deep_merge",
    "vendor_from_api_label",
]
