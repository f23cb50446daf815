"""
Tag registry: tags, column tag assignments and tag-based masking bindings.

A masking policy bound to a tag protects every column carrying that tag,
provided the policy's signature fits the column type. A tag holds at most
one masking policy per return type.
"""

import itertools
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from veilflow.core.errors import (
    DuplicateTag,
    IncompatibleType,
    MissingColumn,
    PolicyAlreadyBound,
    UnknownObject,
    UnknownPolicy,
    UnknownTag,
    ValueNotAllowed,
)
from veilflow.core.locks import EntityLocks
from veilflow.observability.logging import get_logger
from .data_types import is_assignable, type_family
from .models import MaskingPolicy, ObjectRef, Tag, TagAssignment, normalize_identifier
from .policy_engine import PolicyEngine

logger = get_logger("access.tags")

AssignmentKey = Tuple[ObjectRef, str, str]


@dataclass(frozen=True)
class TagReference:
    """One row of a table's tag references listing."""
    tag: str
    column: str
    value: str


def policy_targets(policy: MaskingPolicy, column_type: str) -> bool:
    """A policy targets a column when the column type feeds its input."""
    return is_assignable(column_type, policy.input_type)


def policy_fits(policy: MaskingPolicy, column_type: str) -> bool:
    """A policy fits a column when it targets it and its result assigns back."""
    return policy_targets(policy, column_type) and is_assignable(policy.return_type, column_type)


class TagRegistry:
    """
    Owns tag definitions, table column types, assignments and bindings.

    Usage:
        registry = TagRegistry(policy_engine)
        registry.create_tag("pii", allowed_values={"ADDRESS"})
        registry.register_table("nlt.raw.opor", {"address": "string", "cardcode": "string"})
        registry.assign_tag("nlt.raw.opor", "address", "pii", "ADDRESS")
        registry.bind_masking_policy("pii", "pii_string_mask")
    """

    def __init__(self, policies: PolicyEngine):
        self.policies = policies
        self._tags: Dict[str, Tag] = {}
        self._tables: Dict[ObjectRef, Dict[str, str]] = {}
        self._assignments: Dict[AssignmentKey, TagAssignment] = {}
        # tag -> {return type family: policy name}, in binding order
        self._bindings: Dict[str, Dict[str, str]] = {}
        self._sequence = itertools.count()
        self._locks = EntityLocks()

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def create_tag(
        self,
        name: str,
        allowed_values: Optional[Iterable[str]] = None,
        comment: str = "",
        replace: bool = False,
    ) -> Tag:
        """
        Create a tag.

        Args:
            name: Tag identifier
            allowed_values: Permitted values; None allows free text
            comment: Description
            replace: Recreate an existing tag. This is destructive: every
                masking binding and column assignment of the old tag is
                dropped.

        Raises:
            DuplicateTag: If the tag exists and replace is False
        """
        name = normalize_identifier(name)
        tag = Tag(
            name=name,
            allowed_values=frozenset(allowed_values) if allowed_values is not None else None,
            comment=comment,
        )

        with self._locks.hold(("tag", name)):
            if name in self._tags:
                if not replace:
                    raise DuplicateTag(name)
                dropped_bindings = len(self._bindings.get(name, {}))
                dropped_assignments = self._drop_assignments_of(name)
                logger.warning(
                    f"Replacing tag {name}: dropped {dropped_bindings} masking "
                    f"binding(s) and {dropped_assignments} assignment(s)"
                )
            self._tags[name] = tag
            self._bindings[name] = {}

        logger.info(f"Created tag {name}")
        return tag

    def drop_tag(self, name: str):
        name = normalize_identifier(name)
        with self._locks.hold(("tag", name)):
            if name not in self._tags:
                raise UnknownTag(name)
            self._drop_assignments_of(name)
            del self._tags[name]
            self._bindings.pop(name, None)
        logger.info(f"Dropped tag {name}")

    def _drop_assignments_of(self, tag: str) -> int:
        keys = [key for key in list(self._assignments) if key[2] == tag]
        for key in keys:
            self._assignments.pop(key, None)
        return len(keys)

    def get_tag(self, name: str) -> Tag:
        name = normalize_identifier(name)
        tag = self._tags.get(name)
        if tag is None:
            raise UnknownTag(name)
        return tag

    def show_tags(self) -> List[Tag]:
        return [self._tags[name] for name in sorted(self._tags)]

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def register_table(self, object_ref, columns: Dict[str, str]):
        """
        Declare a table's columns and their types.

        Re-registering replaces the column list. Assignments on columns that
        no longer exist are dropped.

        Raises:
            IncompatibleType: If a kept tagged column changes to a type the
                tag's bound masking policies can no longer mask. The previous
                registration is left in place.
        """
        ref = ObjectRef.of(object_ref)
        normalised = {}
        for column, data_type in columns.items():
            type_family(data_type)
            normalised[normalize_identifier(column)] = data_type

        with self._locks.hold(("table", ref)):
            previous = self._tables.get(ref, {})
            for key_ref, column, tag in list(self._assignments):
                if key_ref != ref or column not in normalised:
                    continue
                self._check_masking_fit(tag, ref, column, normalised[column])
                old_type = previous.get(column)
                if (
                    old_type is not None
                    and self.policy_for(tag, old_type) is not None
                    and self.policy_for(tag, normalised[column]) is None
                ):
                    raise IncompatibleType(
                        f"Column {ref}.{column} is masked through tag {tag}; no masking "
                        f"policy bound to {tag} accepts its new type {normalised[column]}"
                    )

            self._tables[ref] = normalised
            stale = [
                key for key in list(self._assignments)
                if key[0] == ref and key[1] not in normalised
            ]
            for key in stale:
                self._assignments.pop(key, None)

        logger.info(f"Registered table {ref} with {len(normalised)} column(s)")

    def column_type(self, object_ref, column: str) -> str:
        ref = ObjectRef.of(object_ref)
        columns = self._tables.get(ref)
        if columns is None:
            raise UnknownObject(ref)
        column = normalize_identifier(column)
        if column not in columns:
            raise MissingColumn(column, where=f"table {ref}")
        return columns[column]

    def table_columns(self, object_ref) -> Dict[str, str]:
        ref = ObjectRef.of(object_ref)
        columns = self._tables.get(ref)
        if columns is None:
            raise UnknownObject(ref)
        return dict(columns)

    def has_table(self, object_ref) -> bool:
        return ObjectRef.of(object_ref) in self._tables

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def assign_tag(self, object_ref, column: str, tag: str, value: str) -> TagAssignment:
        """
        Set a tag value on a column (overwriting any previous value).

        Raises:
            UnknownTag: If the tag does not exist
            ValueNotAllowed: If the value is outside the tag's allowed values
            UnknownObject: If the table is not registered
            MissingColumn: If the table has no such column
            IncompatibleType: If a masking policy already bound to the tag
                targets this column type but cannot return into it
        """
        ref = ObjectRef.of(object_ref)
        column = normalize_identifier(column)
        tag_def = self.get_tag(tag)
        if not tag_def.allows(value):
            raise ValueNotAllowed(tag_def.name, value, tag_def.allowed_values)

        data_type = self.column_type(ref, column)

        with self._locks.hold(("tag", tag_def.name)):
            self._check_masking_fit(tag_def.name, ref, column, data_type)

            key = (ref, column, tag_def.name)
            existing = self._assignments.get(key)
            sequence = existing.sequence if existing else next(self._sequence)
            assignment = TagAssignment(
                object_ref=ref,
                column=column,
                tag=tag_def.name,
                value=value,
                sequence=sequence,
            )
            self._assignments[key] = assignment

        logger.info(f"Set tag {tag_def.name}='{value}' on {ref}.{column}")
        return assignment

    def _check_masking_fit(self, tag: str, ref: ObjectRef, column: str, data_type: str):
        """A policy bound to ``tag`` that targets ``data_type`` must also return into it."""
        for policy_name in self._bindings.get(tag, {}).values():
            policy = self.policies.get_masking_policy(policy_name)
            if policy_targets(policy, data_type) and not policy_fits(policy, data_type):
                raise IncompatibleType(
                    f"Masking policy {policy.name} bound to tag {tag} "
                    f"returns {policy.return_type}, which cannot be assigned "
                    f"to column {ref}.{column} of type {data_type}"
                )

    def unset_tag(self, object_ref, column: str, tag: str):
        ref = ObjectRef.of(object_ref)
        key = (ref, normalize_identifier(column), normalize_identifier(tag))
        with self._locks.hold(("tag", key[2])):
            if self._assignments.pop(key, None) is not None:
                logger.info(f"Unset tag {key[2]} on {ref}.{key[1]}")

    def tag_value(self, object_ref, column: str, tag: str) -> Optional[str]:
        """Current value of a tag on a column, or None."""
        key = (ObjectRef.of(object_ref), normalize_identifier(column), normalize_identifier(tag))
        assignment = self._assignments.get(key)
        return assignment.value if assignment else None

    def tags_on_column(self, object_ref, column: str) -> List[TagAssignment]:
        """Assignments on a column in the order the tags were first set."""
        ref = ObjectRef.of(object_ref)
        column = normalize_identifier(column)
        found = [
            assignment for assignment in list(self._assignments.values())
            if assignment.object_ref == ref and assignment.column == column
        ]
        return sorted(found, key=lambda assignment: assignment.sequence)

    def tag_references(self, object_ref) -> List[TagReference]:
        """All tag references on a table's columns, in assignment order."""
        ref = ObjectRef.of(object_ref)
        found = [
            assignment for assignment in list(self._assignments.values())
            if assignment.object_ref == ref
        ]
        found.sort(key=lambda assignment: assignment.sequence)
        return [TagReference(a.tag, a.column, a.value) for a in found]

    def _columns_with_tag(self, tag: str) -> List[Tuple[ObjectRef, str, str]]:
        columns = []
        for ref, column, assigned_tag in list(self._assignments):
            if assigned_tag == tag:
                columns.append((ref, column, self._tables[ref][column]))
        return columns

    # ------------------------------------------------------------------
    # Masking policy bindings
    # ------------------------------------------------------------------

    def bind_masking_policy(self, tag: str, policy_name: str):
        """
        Bind a masking policy to a tag.

        Raises:
            UnknownTag: If the tag does not exist
            UnknownPolicy: If no masking policy has this name
            IncompatibleType: If a tagged column fed by the policy cannot
                receive its return type, or the tag is assigned only to
                columns the policy cannot accept
            PolicyAlreadyBound: If the tag already holds a policy with the
                same return type
        """
        tag_def = self.get_tag(tag)
        policy = self.policies.get_masking_policy(policy_name)
        slot = type_family(policy.return_type).value

        with self._locks.hold(("tag", tag_def.name)):
            bindings = self._bindings.setdefault(tag_def.name, {})
            current = bindings.get(slot)
            if current is not None:
                if current == policy.name:
                    return
                raise PolicyAlreadyBound(
                    f"Tag {tag_def.name} already has masking policy {current} "
                    f"for {slot} values"
                )

            tagged = self._columns_with_tag(tag_def.name)
            targeted = [
                (ref, column, data_type) for ref, column, data_type in tagged
                if policy_targets(policy, data_type)
            ]
            if tagged and not targeted:
                raise IncompatibleType(
                    f"Masking policy {policy.name} ({policy.input_type}) accepts none "
                    f"of the columns tagged with {tag_def.name}"
                )
            for ref, column, data_type in targeted:
                if not is_assignable(policy.return_type, data_type):
                    raise IncompatibleType(
                        f"Masking policy {policy.name} returns {policy.return_type}, "
                        f"which cannot be assigned to column {ref}.{column} of type {data_type}"
                    )

            bindings[slot] = policy.name

        logger.info(f"Bound masking policy {policy.name} to tag {tag_def.name}")

    def unbind_masking_policy(self, tag: str, policy_name: str):
        tag_def = self.get_tag(tag)
        policy_name = normalize_identifier(policy_name)
        with self._locks.hold(("tag", tag_def.name)):
            bindings = self._bindings.get(tag_def.name, {})
            for slot, bound in list(bindings.items()):
                if bound == policy_name:
                    del bindings[slot]
                    logger.info(f"Unbound masking policy {policy_name} from tag {tag_def.name}")
                    return
        raise UnknownPolicy(policy_name)

    def bound_policies(self, tag: str) -> List[str]:
        """Masking policies bound to a tag, in binding order."""
        return list(self._bindings.get(normalize_identifier(tag), {}).values())

    def policy_for(self, tag: str, column_type: str) -> Optional[str]:
        """
        Masking policy of ``tag`` that applies to a column of ``column_type``.

        Prefers a policy whose input type is the same family as the column,
        then any other fitting policy in binding order. Returns None when no
        bound policy fits, in which case the column passes through.
        """
        candidates = []
        for policy_name in self.bound_policies(tag):
            policy = self.policies.get_masking_policy(policy_name)
            if policy_fits(policy, column_type):
                candidates.append(policy)
        if not candidates:
            return None

        family = type_family(column_type)
        for policy in candidates:
            if type_family(policy.input_type) == family:
                return policy.name
        return candidates[0].name
