"""
Citizen application submissions (drafts, submit) and the admin review queue.
"""
