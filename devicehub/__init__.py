"""Device vital-data integration core.

This package contains the domain models, the transformation and validation
logic for vital readings, and the plugin registry that drives device plugins.
"""
