"""Tests for derived allocation status and identifier helpers."""

import pytest

from indexer_agent.network.allocation_status import (
    ZERO_ADDRESS,
    AllocationStatus,
    NetworkSnapshot,
    derive_allocation_status,
)
from indexer_agent.network.identifiers import (
    derive_allocation_id,
    is_allocation_id,
    is_deployment_id,
    is_proof,
)
from tests.conftest import ALLOC_1, ALLOC_2, ALLOC_3, DEP_A, INDEXER, PROOF, allocation


class TestDeriveAllocationStatus:
    def test_zero_indexer_is_null(self):
        assert derive_allocation_status(ZERO_ADDRESS, 1000, 0, 100, 7) == AllocationStatus.NULL

    def test_zero_tokens_is_claimed(self):
        assert derive_allocation_status(INDEXER, 0, 50, 100, 7) == AllocationStatus.CLAIMED

    def test_open_allocation_is_active(self):
        assert derive_allocation_status(INDEXER, 1000, 0, 100, 7) == AllocationStatus.ACTIVE

    def test_closed_within_dispute_window(self):
        # closed at 10, current 12, dispute 7 → 12 < 17
        assert derive_allocation_status(INDEXER, 1000, 10, 12, 7) == AllocationStatus.CLOSED

    def test_finalized_once_window_elapses(self):
        assert derive_allocation_status(INDEXER, 1000, 10, 17, 7) == AllocationStatus.FINALIZED
        assert derive_allocation_status(INDEXER, 1000, 10, 40, 7) == AllocationStatus.FINALIZED

    def test_null_wins_over_claimed(self):
        assert derive_allocation_status(ZERO_ADDRESS, 0, 0, 100, 7) == AllocationStatus.NULL


class TestSnapshots:
    def test_active_allocations_filters_by_status(self):
        snapshot = NetworkSnapshot(
            epoch=100,
            allocations=[
                allocation(ALLOC_1, DEP_A),
                allocation(ALLOC_2, DEP_A, closed=98),
                allocation(ALLOC_3, DEP_A, tokens=0, closed=50),
            ],
        )
        assert [a.id for a in snapshot.active_allocations(7)] == [ALLOC_1]

    def test_to_dict_includes_status_and_age(self):
        data = allocation(ALLOC_2, DEP_A, created=80, closed=98).to_dict(100, 7)
        assert data["status"] == "Closed"
        assert data["age_in_epochs"] == 20
        assert data["allocated_tokens"] == "1000"


class TestIdentifiers:
    @pytest.mark.parametrize("value,expected", [
        (DEP_A, True),
        ("0x" + "ab" * 32, True),
        ("Qm123", False),
        ("not-a-deployment", False),
    ])
    def test_is_deployment_id(self, value, expected):
        assert is_deployment_id(value) is expected

    def test_allocation_and_proof_formats(self):
        assert is_allocation_id(ALLOC_1)
        assert not is_allocation_id(PROOF)
        assert is_proof(PROOF)
        assert not is_proof("0x1234")

    def test_derived_allocation_id_is_stable_address(self):
        first = derive_allocation_id(INDEXER, DEP_A, 100, 1)
        assert first == derive_allocation_id(INDEXER, DEP_A, 100, 1)
        assert first != derive_allocation_id(INDEXER, DEP_A, 100, 2)
        assert is_allocation_id(first)
