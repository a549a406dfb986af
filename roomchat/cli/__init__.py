"""
Roomchat command line interface.
"""
