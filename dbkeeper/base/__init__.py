# ============================================================================
# dbkeeper/base/__init__.py
# Foundation Package - configuration and identity
# ============================================================================
