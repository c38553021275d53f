"""
Tests for CostCenterService -- the cost center tree.

Covers:
- create(): parent linkage, duplicate code, unknown parent, depth guard
- reparent(): cycle refusal (self, descendant), happy path
- resolve_path(): root-to-node order, corrupted chain detection
- validate_allocation(): department ownership, sub cost center nesting
- is_active(): approval and effective dates
"""

from datetime import date
from uuid import uuid4

import pytest
from sqlalchemy import update

from budget_kernel.domain.dtos import CostCenterStatus, CostCenterType
from budget_kernel.exceptions import (
    CostCenterNotFoundError,
    CycleError,
    DuplicateCodeError,
    HierarchyMismatchError,
    InvalidDateRangeError,
)
from budget_kernel.models.cost_center import CostCenter
from budget_kernel.services.cost_center_service import CostCenterService
from tests.conftest import DEPARTMENT_ID

START = date(2020, 1, 1)


class TestCreate:

    def test_tree_links_parents(self, cost_center_tree, cost_center_service):
        assert cost_center_tree.child.parent_id == cost_center_tree.root.id
        assert cost_center_tree.grandchild.parent_id == cost_center_tree.child.id
        children = cost_center_service.children(cost_center_tree.root.id)
        assert [c.code for c in children] == ["OPS-IT"]

    def test_new_cost_center_is_pending(self, cost_center_service, test_actor_id):
        cc = cost_center_service.create("FIN", "Finance", CostCenterType.FIXED, START, test_actor_id)
        assert cc.status == CostCenterStatus.PENDING
        assert cost_center_service.get_by_code("FIN").id == cc.id

    def test_duplicate_code(self, cost_center_tree, cost_center_service, test_actor_id):
        with pytest.raises(DuplicateCodeError):
            cost_center_service.create("OPS", "Again", CostCenterType.FIXED, START, test_actor_id)

    def test_unknown_parent(self, cost_center_service, test_actor_id):
        with pytest.raises(CostCenterNotFoundError):
            cost_center_service.create(
                "ORPHAN", "Orphan", CostCenterType.FIXED, START, test_actor_id,
                parent_id=uuid4(),
            )

    def test_inverted_effective_range(self, cost_center_service, test_actor_id):
        with pytest.raises(InvalidDateRangeError):
            cost_center_service.create(
                "BAD", "Bad", CostCenterType.FIXED, START, test_actor_id,
                effective_end_date=date(2019, 1, 1),
            )

    def test_depth_guard(self, session, deterministic_clock, test_actor_id):
        shallow = CostCenterService(session, deterministic_clock, max_depth=2)
        root = shallow.create("L1", "Level 1", CostCenterType.FIXED, START, test_actor_id)
        mid = shallow.create(
            "L2", "Level 2", CostCenterType.FIXED, START, test_actor_id, parent_id=root.id
        )
        with pytest.raises(CycleError):
            shallow.create(
                "L3", "Level 3", CostCenterType.FIXED, START, test_actor_id, parent_id=mid.id
            )

    def test_max_depth_must_be_positive(self, session):
        with pytest.raises(ValueError):
            CostCenterService(session, max_depth=0)


class TestReparent:

    def test_move_under_itself_is_a_cycle(self, cost_center_tree, cost_center_service, test_actor_id):
        with pytest.raises(CycleError):
            cost_center_service.reparent(
                cost_center_tree.root.id, cost_center_tree.root.id, test_actor_id
            )

    def test_move_under_descendant_is_a_cycle(
        self, cost_center_tree, cost_center_service, test_actor_id
    ):
        with pytest.raises(CycleError) as exc_info:
            cost_center_service.reparent(
                cost_center_tree.root.id, cost_center_tree.grandchild.id, test_actor_id
            )
        assert str(cost_center_tree.root.id) in exc_info.value.path
        # Nothing moved
        assert cost_center_service.get(cost_center_tree.root.id).parent_id is None

    def test_move_to_root_and_back(self, cost_center_tree, cost_center_service, test_actor_id):
        moved = cost_center_service.reparent(cost_center_tree.grandchild.id, None, test_actor_id)
        assert moved.parent_id is None
        moved = cost_center_service.reparent(
            cost_center_tree.grandchild.id, cost_center_tree.root.id, test_actor_id
        )
        assert moved.parent_id == cost_center_tree.root.id

    def test_unknown_node(self, cost_center_service, test_actor_id):
        with pytest.raises(CostCenterNotFoundError):
            cost_center_service.reparent(uuid4(), None, test_actor_id)


class TestResolvePath:

    def test_root_to_node(self, cost_center_tree, cost_center_service):
        path = cost_center_service.resolve_path(cost_center_tree.grandchild.id)
        assert [cc.code for cc in path] == ["OPS", "OPS-IT", "OPS-IT-NET"]

    def test_root_path_is_itself(self, cost_center_tree, cost_center_service):
        assert [cc.code for cc in cost_center_service.resolve_path(cost_center_tree.root.id)] == ["OPS"]

    def test_corrupted_chain_detected(self, session, cost_center_tree, cost_center_service):
        # Write a loop behind the service's back
        session.execute(
            update(CostCenter)
            .where(CostCenter.id == cost_center_tree.root.id)
            .values(parent_id=cost_center_tree.grandchild.id)
        )
        session.expire_all()
        with pytest.raises(CycleError):
            cost_center_service.resolve_path(cost_center_tree.child.id)

    def test_unknown_node(self, cost_center_service):
        with pytest.raises(CostCenterNotFoundError):
            cost_center_service.resolve_path(uuid4())


class TestValidateAllocation:

    def test_nested_triple_is_valid(self, cost_center_tree, cost_center_service):
        cost_center_service.validate_allocation(
            DEPARTMENT_ID, cost_center_tree.root.id, cost_center_tree.grandchild.id
        )

    def test_without_sub_cost_center(self, cost_center_tree, cost_center_service):
        cost_center_service.validate_allocation(DEPARTMENT_ID, cost_center_tree.root.id)

    def test_wrong_department(self, cost_center_tree, cost_center_service):
        with pytest.raises(HierarchyMismatchError):
            cost_center_service.validate_allocation("D-OTHER", cost_center_tree.root.id)

    def test_cost_center_without_department_funds_any(
        self, cost_center_service, test_actor_id
    ):
        shared = cost_center_service.create(
            "SHARED", "Shared", CostCenterType.SUPPORT, START, test_actor_id
        )
        cost_center_service.validate_allocation("D-ANY", shared.id)

    def test_sub_must_descend_from_cost_center(self, cost_center_tree, cost_center_service):
        with pytest.raises(HierarchyMismatchError):
            cost_center_service.validate_allocation(
                DEPARTMENT_ID, cost_center_tree.grandchild.id, cost_center_tree.root.id
            )

    def test_sub_cannot_be_cost_center_itself(self, cost_center_tree, cost_center_service):
        with pytest.raises(HierarchyMismatchError):
            cost_center_service.validate_allocation(
                DEPARTMENT_ID, cost_center_tree.root.id, cost_center_tree.root.id
            )

    def test_unrelated_sub(self, cost_center_tree, cost_center_service, test_actor_id):
        other = cost_center_service.create(
            "MKT", "Marketing", CostCenterType.DIRECT, START, test_actor_id
        )
        with pytest.raises(HierarchyMismatchError):
            cost_center_service.validate_allocation(
                DEPARTMENT_ID, cost_center_tree.root.id, other.id
            )


class TestActive:

    def test_pending_is_not_active(self, cost_center_service, test_actor_id):
        cc = cost_center_service.create("NEW", "New", CostCenterType.FIXED, START, test_actor_id)
        assert not cost_center_service.is_active(cc.id, date(2025, 1, 1))
        cost_center_service.approve(cc.id, test_actor_id)
        assert cost_center_service.is_active(cc.id, date(2025, 1, 1))

    def test_before_start_is_not_active(self, cost_center_tree, cost_center_service):
        assert not cost_center_service.is_active(cost_center_tree.root.id, date(2019, 12, 31))

    def test_end_dated(self, cost_center_tree, cost_center_service, test_actor_id):
        cost_center_service.end_date(cost_center_tree.child.id, date(2024, 12, 31), test_actor_id)
        assert cost_center_service.is_active(cost_center_tree.child.id, date(2024, 12, 31))
        assert not cost_center_service.is_active(cost_center_tree.child.id, date(2025, 1, 1))
