"""Declarative egress policy: models, YAML loading and rule compilation."""
