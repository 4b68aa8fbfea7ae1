# buildbot/__init__.py
"""Release build bot for Lua, LuaJIT and native Lua extension modules on Windows."""

__version__ = "0.3.0"
