"""opflow: model-driven reactive infrastructure orchestration."""

__version__ = '0.1.0'
