"""
Media Housekeeping Pipeline

Background work that runs outside the request path:
1. Abandoned-upload reaper - reclaims raw uploads of expired sessions
"""
