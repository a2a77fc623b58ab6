# trading/services/__init__.py
