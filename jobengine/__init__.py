"""
Job execution and approval engine
"""
