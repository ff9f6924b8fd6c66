"""Shared utility functions."""

from .batch import BatchExecutor, BatchFailure, BatchResult, process_in_batches

__all__ = ["BatchExecutor", "BatchFailure", "BatchResult", "process_in_batches"]
