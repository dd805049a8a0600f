"""Operator engine for template-based stack provisioning.

Builds a resource graph from a template, plans a diff against recorded
state, executes create/update/delete actions through resource providers
and rolls back completed work on failure.

Package name 'stack_opr' is short for stack operator.
"""
