"""
zvol-agent

Maps host volume operations (create, resize, snapshot, clone, delete) onto
the TrueNAS resource graph of zvols, block exports and export mappings, and
reconciles drift between the two.
"""

__version__ = "1.0.0"
