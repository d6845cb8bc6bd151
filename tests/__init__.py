# SPDX-License-Identifier: Apache-2.0
"""
Mutation Protocol Tests

This package contains conformance tests for the batched mutation protocol:
the change model, temp id phases, preflight validation, the execution queue,
the wire surface and the chunking client.
"""
