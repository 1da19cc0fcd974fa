"""novelctx - budgeted, cached writing context for long-form fiction generation"""

__version__ = "0.1.0"
