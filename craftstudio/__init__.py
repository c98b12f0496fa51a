"""
CraftStudio - supervisor for local CraftOBJ daemon instances
"""

__version__ = "0.4.0"
