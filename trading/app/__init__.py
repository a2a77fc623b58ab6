# trading/app/__init__.py
