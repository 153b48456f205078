"""Catalog reconciliation of extracted product listings."""

from .reconciler import CatalogReconciler, ReconcileSummary

__all__ = ["CatalogReconciler", "ReconcileSummary"]
