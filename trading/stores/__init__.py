# trading/stores/__init__.py
