"""
ContentFlow - A visual content workflow engine.

Connect research, generation, editing and formatting nodes into a graph,
then run it with level-parallel scheduling, retries and live progress.
"""

__version__ = "1.0.0"
