"""HTTP content retrieval helpers."""
