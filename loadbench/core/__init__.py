"""
Core run machinery: metric recording, stage curves, worker pools, scheduling,
threshold evaluation and the test runner.
"""
