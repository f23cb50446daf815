"""
Access evaluator: per-row filtering and column masking for table scans.

Each row goes START -> ROW_FILTER -> COLUMN_MASK -> EMIT; a scan reaches
DONE when the row sequence is exhausted. The evaluator holds no per-scan
state, so it can be called concurrently across rows and sessions.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from veilflow.core.errors import (
    GovernanceError,
    IncompatibleType,
    MissingColumn,
    PolicyAlreadyBound,
    PolicyEvaluationError,
    UnknownPolicy,
)
from veilflow.core.locks import EntityLocks
from veilflow.observability.audit import Decision
from veilflow.observability.logging import get_logger
from veilflow.observability.stats import EvaluationStats
from .models import (
    ObjectRef,
    Principal,
    RowOutcome,
    RowPolicyBinding,
    ScanState,
    normalize_identifier,
)
from .policy_engine import PolicyEngine, same_value
from .roles import PrincipalContext
from .tags import TagRegistry

logger = get_logger("access.evaluator")

DecisionObserver = Callable[[Decision], None]


class AccessEvaluator:
    """
    Facade that applies row access and masking policies to table rows.

    Workflow per row:
        1. Resolve the principal's effective role set
        2. ROW_FILTER: evaluate the table's row access policy (if bound);
           a False result drops the row
        3. COLUMN_MASK: for each tagged column, apply the masking policy
           bound to its tag(s) that fits the column type
        4. EMIT the resulting row

    Untagged columns and tags without a fitting policy pass through.
    Exempt roles are expressed inside the policies; the evaluator never
    bypasses them.

    Usage:
        evaluator = AccessEvaluator(principals, tags, policies, observer=AuditTrail())
        evaluator.bind_row_policy("nlt.raw.opor", "customer_cardcode_row_policy", ["cardcode"])

        for row in evaluator.visible_rows("nlt.raw.opor", principal, rows):
            ...
    """

    def __init__(
        self,
        principals: PrincipalContext,
        tags: TagRegistry,
        policies: PolicyEngine,
        observer: Optional[DecisionObserver] = None,
    ):
        self.principals = principals
        self.tags = tags
        self.policies = policies
        self.observer = observer
        self._row_bindings: Dict[ObjectRef, RowPolicyBinding] = {}
        self._locks = EntityLocks()

    # ------------------------------------------------------------------
    # Row policy bindings
    # ------------------------------------------------------------------

    def bind_row_policy(
        self,
        object_ref,
        policy_name: str,
        columns: Sequence[str],
        replace: bool = False,
    ) -> RowPolicyBinding:
        """
        Attach a row access policy to a table.

        Args:
            object_ref: Table (ObjectRef or "db.schema.table")
            policy_name: Row access policy to attach
            columns: Table columns feeding the policy inputs, in order
            replace: Swap out an existing binding on the table

        Raises:
            UnknownPolicy: If no row access policy has this name
            IncompatibleType: If the column count differs from the policy's inputs
            MissingColumn: If the table is registered and lacks a column
            PolicyAlreadyBound: If the table already has a row access policy
        """
        ref = ObjectRef.of(object_ref)
        policy = self.policies.get_row_access_policy(policy_name)
        columns = tuple(normalize_identifier(c) for c in columns)

        if len(columns) != len(policy.input_columns):
            raise IncompatibleType(
                f"Row access policy {policy.name} takes {len(policy.input_columns)} "
                f"column(s), binding on {ref} supplies {len(columns)}"
            )
        if self.tags.has_table(ref):
            known = self.tags.table_columns(ref)
            for column in columns:
                if column not in known:
                    raise MissingColumn(column, where=f"table {ref}")

        binding = RowPolicyBinding(object_ref=ref, policy_name=policy.name, columns=columns)
        with self._locks.hold(("row_policy", ref)):
            current = self._row_bindings.get(ref)
            if current is not None and not replace:
                raise PolicyAlreadyBound(
                    f"Table {ref} already has row access policy {current.policy_name}"
                )
            self._row_bindings[ref] = binding

        logger.info(
            f"Added row access policy {policy.name} to {ref} on ({', '.join(columns)})"
        )
        return binding

    def unbind_row_policy(self, object_ref):
        ref = ObjectRef.of(object_ref)
        with self._locks.hold(("row_policy", ref)):
            binding = self._row_bindings.pop(ref, None)
        if binding is None:
            raise UnknownPolicy(f"row access policy on {ref}")
        logger.info(f"Dropped row access policy {binding.policy_name} from {ref}")

    def row_policy_binding(self, object_ref) -> Optional[RowPolicyBinding]:
        return self._row_bindings.get(ObjectRef.of(object_ref))

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_row(self, object_ref, principal: Principal, row: Mapping[str, Any]) -> RowOutcome:
        """
        Filter and mask a single row.

        Returns:
            RowOutcome that is EMITTED (with the masked row), DROPPED by the
            row access policy, or FAILED with the evaluation error
        """
        outcome, _ = self._evaluate_and_observe(ObjectRef.of(object_ref), principal, row)
        return outcome

    def _evaluate_and_observe(
        self,
        ref: ObjectRef,
        principal: Principal,
        row: Mapping[str, Any],
        effective_roles: Optional[FrozenSet[str]] = None,
    ) -> Tuple[RowOutcome, Optional[FrozenSet[str]]]:
        outcome, effective_roles = self._evaluate(ref, principal, row, effective_roles)
        if self.observer is not None:
            self.observer(self._decision(ref, principal, outcome, effective_roles))
        return outcome, effective_roles

    def _evaluate(
        self,
        ref: ObjectRef,
        principal: Principal,
        row: Mapping[str, Any],
        effective_roles: Optional[FrozenSet[str]] = None,
    ) -> Tuple[RowOutcome, Optional[FrozenSet[str]]]:
        """
        Run one row through the state machine.

        Returns the outcome and the role set it was decided with (None when
        the principal could not be resolved).
        """
        state = ScanState.START
        binding = self._row_bindings.get(ref)
        row_policy = binding.policy_name if binding else None

        try:
            if effective_roles is None:
                effective_roles = self.principals.effective_roles(principal)

            state = ScanState.ROW_FILTER
            if binding is not None:
                inputs = self._row_policy_inputs(binding, row)
                if not self.policies.evaluate_row_policy(binding.policy_name, effective_roles, inputs):
                    return RowOutcome.drop(binding.policy_name), effective_roles

            state = ScanState.COLUMN_MASK
            masked_row, masked_columns = self._mask_columns(ref, effective_roles, row)

            state = ScanState.EMIT
            return (
                RowOutcome.emit(masked_row, row_policy=row_policy, masked_columns=masked_columns),
                effective_roles,
            )

        except GovernanceError as e:
            logger.error(
                f"Evaluation failed on {ref} during {state.value} "
                f"for {principal.user} as {principal.active_role}: {e}"
            )
            return RowOutcome.fail(e, state, row_policy=row_policy), effective_roles

    def _row_policy_inputs(self, binding: RowPolicyBinding, row: Mapping[str, Any]) -> Dict[str, Any]:
        """Rename bound table columns to the policy's input names."""
        policy = self.policies.get_row_access_policy(binding.policy_name)
        by_name = {normalize_identifier(key): key for key in row}
        inputs = {}
        for column, input_name in zip(binding.columns, policy.input_columns):
            key = by_name.get(column)
            if key is None:
                raise MissingColumn(column, where=f"row of {binding.object_ref}")
            inputs[input_name] = row[key]
        return inputs

    def _mask_columns(self, ref: ObjectRef, effective_roles, row: Mapping[str, Any]):
        masked_row = dict(row)
        masked_columns: Dict[str, str] = {}

        for key, raw_value in row.items():
            column = normalize_identifier(key)
            assignments = self.tags.tags_on_column(ref, column)
            if not assignments:
                continue

            column_type = self.tags.column_type(ref, column)
            candidates = []
            for assignment in assignments:
                policy_name = self.tags.policy_for(assignment.tag, column_type)
                if policy_name is not None:
                    candidates.append((policy_name, assignment.value))
            if not candidates:
                continue

            value, winner = self.policies.resolve_mask(candidates, effective_roles, raw_value)
            if winner is not None:
                masked_row[key] = value
                masked_columns[key] = winner

        return masked_row, masked_columns

    def compile(self, object_ref, principal: Principal, columns: Iterable[str]) -> "CompiledAccess":
        """
        Snapshot everything needed to evaluate rows of ``columns`` for one
        principal into a picklable plan.

        The plan holds only the effective role set and the policy functions,
        so it can be shipped to worker processes. Later registry changes do
        not affect an existing plan.

        Raises:
            GovernanceError: If the principal or a bound policy cannot be resolved
        """
        ref = ObjectRef.of(object_ref)
        effective_roles = self.principals.effective_roles(principal)

        binding = self._row_bindings.get(ref)
        row_policy = None
        row_predicate = None
        row_inputs: tuple = ()
        if binding is not None:
            policy = self.policies.get_row_access_policy(binding.policy_name)
            row_policy = policy.name
            row_predicate = policy.predicate
            row_inputs = tuple(zip(binding.columns, policy.input_columns))

        column_masks: Dict[str, List[tuple]] = {}
        for key in columns:
            column = normalize_identifier(key)
            assignments = self.tags.tags_on_column(ref, column)
            if not assignments:
                continue
            column_type = self.tags.column_type(ref, column)
            candidates = []
            for assignment in assignments:
                policy_name = self.tags.policy_for(assignment.tag, column_type)
                if policy_name is not None:
                    function = self.policies.get_masking_policy(policy_name).function
                    candidates.append((policy_name, function, assignment.value))
            if candidates:
                column_masks[column] = candidates

        logger.debug(
            f"Compiled access plan for {ref} as {principal.active_role}: "
            f"row policy={row_policy}, masked columns={sorted(column_masks)}"
        )
        return CompiledAccess(
            table=str(ref),
            effective_roles=effective_roles,
            row_policy=row_policy,
            row_predicate=row_predicate,
            row_inputs=row_inputs,
            column_masks=column_masks,
        )

    def _decision(
        self,
        ref: ObjectRef,
        principal: Principal,
        outcome: RowOutcome,
        effective_roles: Optional[FrozenSet[str]],
    ) -> Decision:
        return Decision(
            table=str(ref),
            user=principal.user,
            active_role=principal.active_role,
            effective_roles=effective_roles or frozenset(),
            outcome=outcome.status.value,
            row_policy=outcome.row_policy,
            masked_columns=dict(outcome.masked_columns),
            error=str(outcome.error) if outcome.error else None,
        )

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def scan(
        self,
        object_ref,
        principal: Principal,
        rows: Iterable[Mapping[str, Any]],
        stats: Optional[EvaluationStats] = None,
    ) -> Iterator[RowOutcome]:
        """
        Lazily evaluate a sequence of rows.

        Row order is whatever the caller supplies; nothing here depends on
        it. Stopping iteration early is the only form of cancellation.
        The principal's role set is resolved once, at the first row, and
        used for the whole scan.
        """
        ref = ObjectRef.of(object_ref)
        count = 0
        effective_roles = None
        for row in rows:
            outcome, effective_roles = self._evaluate_and_observe(ref, principal, row, effective_roles)
            count += 1
            if stats is not None:
                stats.record_outcome(outcome.status.value, masked_columns=len(outcome.masked_columns))
            yield outcome
        logger.debug(f"Scan of {ref} reached {ScanState.DONE.value} after {count} row(s)")

    def visible_rows(
        self,
        object_ref,
        principal: Principal,
        rows: Iterable[Mapping[str, Any]],
        stats: Optional[EvaluationStats] = None,
    ) -> Iterator[Dict[str, Any]]:
        """
        Yield only emitted rows.

        Raises:
            GovernanceError: The first evaluation error encountered
        """
        for outcome in self.scan(object_ref, principal, rows, stats=stats):
            if outcome.failed:
                raise outcome.error
            if outcome.emitted:
                yield outcome.row

    def evaluate_rows(
        self,
        object_ref,
        principal: Principal,
        rows: Iterable[Mapping[str, Any]],
    ) -> List[RowOutcome]:
        """Eager variant of scan()."""
        return list(self.scan(object_ref, principal, rows))


@dataclass
class CompiledAccess:
    """
    Picklable per-principal access plan for one table.

    Produced by ``AccessEvaluator.compile``. Evaluates rows with the same
    ROW_FILTER -> COLUMN_MASK -> EMIT semantics as the evaluator, using
    only the snapshot taken at compile time.
    """
    table: str
    effective_roles: FrozenSet[str]
    row_policy: Optional[str] = None
    row_predicate: Optional[Callable] = None
    row_inputs: Tuple[Tuple[str, str], ...] = ()
    column_masks: Dict[str, List[tuple]] = field(default_factory=dict)

    def evaluate(self, row: Mapping[str, Any]) -> RowOutcome:
        state = ScanState.ROW_FILTER
        try:
            if self.row_predicate is not None:
                by_name = {normalize_identifier(key): key for key in row}
                values = {}
                for column, input_name in self.row_inputs:
                    key = by_name.get(column)
                    if key is None:
                        raise MissingColumn(column, where=f"row of {self.table}")
                    values[input_name] = row[key]
                try:
                    visible = bool(self.row_predicate(self.effective_roles, values))
                except Exception as e:
                    raise PolicyEvaluationError(self.row_policy, e) from e
                if not visible:
                    return RowOutcome.drop(self.row_policy)

            state = ScanState.COLUMN_MASK
            masked_row = dict(row)
            masked_columns: Dict[str, str] = {}
            for key, raw_value in row.items():
                for policy_name, function, tag_value in self.column_masks.get(normalize_identifier(key), ()):
                    try:
                        masked = function(self.effective_roles, tag_value, raw_value)
                    except Exception as e:
                        raise PolicyEvaluationError(policy_name, e) from e
                    if not same_value(masked, raw_value):
                        masked_row[key] = masked
                        masked_columns[key] = policy_name
                        break

            return RowOutcome.emit(masked_row, row_policy=self.row_policy, masked_columns=masked_columns)

        except GovernanceError as e:
            return RowOutcome.fail(e, state, row_policy=self.row_policy)
