__app_name__ = "WhisperFlow"
__version__ = "0.3.0"
