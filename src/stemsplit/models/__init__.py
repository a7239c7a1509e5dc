"""Mask estimators and the model registry."""
