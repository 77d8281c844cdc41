"""
End-to-end test driver for the builder image.
"""
