from importlib import import_module

modules = [
    'designs',
    'executions',
    'reviews',
    'notifications',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
