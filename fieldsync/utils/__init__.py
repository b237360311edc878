from .logging_setup import SensitiveDataFilter, configure_logging, mask_sensitive_data

__all__ = ['SensitiveDataFilter', 'configure_logging', 'mask_sensitive_data']
