"""
Usage limit policies package for the Limits Service.
"""
