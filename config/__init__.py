"""Static policy and infrastructure configuration."""
