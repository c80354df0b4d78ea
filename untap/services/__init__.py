"""Service catalog — what to check and how to check it."""

from .registry import Service, ServiceRegistry
