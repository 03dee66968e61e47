"""
Workload functions for loadbench runs.

Reference them from option files as ``loadbench.workloads.contacts:<name>``.
"""
