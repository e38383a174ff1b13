"""Mirror a local folder into a running app container over SSH"""
__version__ = "1.0.0"
