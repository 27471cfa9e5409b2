"""Reconciliation of portal records against locally stored records."""
import logging
from typing import Dict, Iterable, Optional

from sync.models import (
    DuplicatePolicy,
    ExternalRecord,
    LocalRecord,
    ReconciliationPlan,
    SyncContext,
)

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Computes insert, update and delete actions for one sync pass.

    The engine never touches storage. Applying the plan is up to the caller,
    in the order insert, update, delete.
    """

    # Bookkeeping fields written by the store, never compared
    IGNORED_FIELDS = frozenset({'last_sync_at', 'updated_at', 'created_at'})

    def reconcile(
        self,
        desired: Iterable[ExternalRecord],
        current: Iterable[LocalRecord],
        context: Optional[SyncContext] = None
    ) -> ReconciliationPlan:
        """
        Compare freshly fetched records with the stored ones.

        Args:
            desired: Records fetched from the portal
            current: Records currently persisted
            context: Lookups, cross-references and policies for this pass

        Returns:
            ReconciliationPlan with disjoint action lists
        """
        context = context or SyncContext()
        plan = ReconciliationPlan()

        deduplicated = self._deduplicate(desired, context.duplicate_policy, plan)
        current_by_id = self._index_current(current, plan)

        for external_id, record in deduplicated.items():
            local = current_by_id.get(external_id)
            mapped = self.map_fields(record, context, plan, insert=local is None)
            if local is None:
                plan.to_insert.append(mapped)
            elif self.records_differ(local, mapped):
                plan.to_update.append((local, mapped))
            else:
                plan.unchanged.append(local)

        for external_id, local in current_by_id.items():
            if external_id in deduplicated:
                continue
            if context.delete_missing:
                plan.to_delete.append(local)
            else:
                plan.retained.append(local)

        logger.info(
            f"Reconciliation plan: {len(plan.to_insert)} to insert, "
            f"{len(plan.to_update)} to update, {len(plan.to_delete)} to delete, "
            f"{len(plan.unchanged)} unchanged",
            extra={
                'duplicates_dropped': plan.duplicates_dropped,
                'invalid_dropped': plan.invalid_dropped,
                'unmapped': len(plan.unmapped),
                'unresolved': len(plan.unresolved)
            }
        )
        return plan

    def _deduplicate(
        self,
        desired: Iterable[ExternalRecord],
        policy: DuplicatePolicy,
        plan: ReconciliationPlan
    ) -> Dict[str, ExternalRecord]:
        records: Dict[str, ExternalRecord] = {}

        for record in desired:
            external_id = normalize_external_id(record.external_id)
            if external_id is None:
                plan.invalid_dropped += 1
                continue

            if external_id in records:
                plan.duplicates_dropped += 1
                logger.warning(f"Duplicate external id {external_id} in portal data")
                if policy == DuplicatePolicy.KEEP_FIRST:
                    continue
                # Re-insert so iteration order follows the surviving record
                del records[external_id]

            records[external_id] = ExternalRecord(
                external_id=external_id,
                fields=dict(record.fields),
                insert_fields=dict(record.insert_fields)
            )

        return records

    def _index_current(
        self,
        current: Iterable[LocalRecord],
        plan: ReconciliationPlan
    ) -> Dict[str, LocalRecord]:
        by_id: Dict[str, LocalRecord] = {}

        for local in current:
            external_id = normalize_external_id(local.external_id)
            if external_id is None:
                plan.unmapped.append(local)
                continue

            if external_id in by_id:
                # Collapse duplicated local rows onto the first one
                logger.warning(
                    f"Local record {local.local_id} duplicates external id {external_id}"
                )
                plan.to_delete.append(local)
                continue

            by_id[external_id] = local

        if plan.unmapped:
            logger.info(f"Leaving {len(plan.unmapped)} unmapped local records untouched")
        return by_id

    def map_fields(
        self,
        record: ExternalRecord,
        context: SyncContext,
        plan: Optional[ReconciliationPlan] = None,
        insert: bool = True
    ) -> ExternalRecord:
        """
        Resolve cross-referenced fields through the context lookups.

        Unresolved references set the target field to None; the record
        itself is kept. Insert-only references are skipped for updates.

        Args:
            record: Deduplicated portal record
            context: Lookups for this pass
            plan: Plan collecting unresolved reference messages
            insert: Whether the record is about to be inserted

        Returns:
            New ExternalRecord with resolved fields
        """
        fields = dict(record.fields)
        insert_fields = dict(record.insert_fields)

        for reference in context.cross_references:
            if reference.insert_only and not insert:
                continue
            target = insert_fields if reference.insert_only else fields
            if reference.insert_only:
                source_value = target.pop(reference.source_field, None)
            else:
                source_value = target.get(reference.source_field)
            resolved = context.resolve(reference.table, source_value)
            target[reference.target_field] = resolved

            if resolved is None and source_value is not None and plan is not None:
                plan.unresolved.append(
                    f"{record.external_id}: {reference.source_field}={source_value} "
                    f"not found in {reference.table}"
                )

        return ExternalRecord(
            external_id=record.external_id,
            fields=fields,
            insert_fields=insert_fields
        )

    def records_differ(self, local: LocalRecord, desired: ExternalRecord) -> bool:
        """
        Compare the fields the portal provides with the stored ones.

        Fields only present locally are not compared.

        Args:
            local: Stored record
            desired: Mapped portal record

        Returns:
            True if any portal-provided field differs
        """
        return any(
            local.fields.get(name) != value
            for name, value in desired.fields.items()
            if name not in self.IGNORED_FIELDS
        )


def normalize_external_id(value) -> Optional[str]:
    """Stringify and trim an external id; empty ids become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def plan_summary(plan: ReconciliationPlan) -> Dict[str, int]:
    """Counts of a plan for logging and responses."""
    return {
        'to_insert': len(plan.to_insert),
        'to_update': len(plan.to_update),
        'to_delete': len(plan.to_delete),
        'unchanged': len(plan.unchanged),
        'unmapped': len(plan.unmapped),
        'retained': len(plan.retained),
        'duplicates_dropped': plan.duplicates_dropped,
        'invalid_dropped': plan.invalid_dropped,
        'unresolved': len(plan.unresolved),
    }
