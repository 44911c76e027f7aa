"""
Quality evaluation app: static manual metrics and golden-question search probes.
"""
