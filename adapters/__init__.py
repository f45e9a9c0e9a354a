"""Adapters that plug concrete storage, delivery and clinical content into the engine."""
