"""
fields.py
----------
Closed set of transaction fields a rule condition may reference.

Rule definitions name fields by string ("amount", "oldbalanceOrg", ...).
Those names are resolved to a FieldRef once, when the rule is loaded, so the
evaluator never does string-keyed lookups on a record. Ground-truth labels
are not addressable: rules must never see them.
"""

from enum import Enum
from operator import attrgetter
from typing import Any, Callable, Dict, Optional


class FieldRef(Enum):
    TIMESTAMP_STEP = "timestamp_step"
    TYPE = "type"
    AMOUNT = "amount"
    ACCOUNT = "account"
    RECIPIENT = "recipient"
    ORIGIN_BALANCE_BEFORE = "origin_balance_before"
    ORIGIN_BALANCE_AFTER = "origin_balance_after"
    DEST_BALANCE_BEFORE = "dest_balance_before"
    DEST_BALANCE_AFTER = "dest_balance_after"

    @property
    def is_numeric(self) -> bool:
        return self not in _STRING_FIELDS

    @property
    def is_behavioral(self) -> bool:
        """Balance fields describe account behaviour rather than the transfer itself."""
        return self in _BEHAVIORAL_FIELDS

    def read(self, transaction) -> Any:
        """Typed accessor: returns this field's value from a Transaction."""
        return _ACCESSORS[self](transaction)

    @classmethod
    def resolve(cls, name: Any) -> Optional["FieldRef"]:
        """
        Maps a field name as written in a rule (canonical name or a known
        dataset alias) to a FieldRef. Returns None for anything unknown.
        """
        if not isinstance(name, str):
            return None
        key = name.strip()
        return _ALIASES.get(key) or _ALIASES.get(key.lower())


_STRING_FIELDS = {FieldRef.TYPE, FieldRef.ACCOUNT, FieldRef.RECIPIENT}

_BEHAVIORAL_FIELDS = {
    FieldRef.ORIGIN_BALANCE_BEFORE,
    FieldRef.ORIGIN_BALANCE_AFTER,
    FieldRef.DEST_BALANCE_BEFORE,
    FieldRef.DEST_BALANCE_AFTER,
}

_ACCESSORS: Dict[FieldRef, Callable[[Any], Any]] = {
    ref: attrgetter(ref.value) for ref in FieldRef
}

# Canonical names plus the column names used by PaySim / IBM AML exports.
_ALIASES: Dict[str, FieldRef] = {ref.value: ref for ref in FieldRef}
_ALIASES.update({
    "step": FieldRef.TIMESTAMP_STEP,
    "timestamp": FieldRef.TIMESTAMP_STEP,
    "transaction_type": FieldRef.TYPE,
    "nameOrig": FieldRef.ACCOUNT,
    "nameorig": FieldRef.ACCOUNT,
    "nameDest": FieldRef.RECIPIENT,
    "namedest": FieldRef.RECIPIENT,
    "oldbalanceOrg": FieldRef.ORIGIN_BALANCE_BEFORE,
    "oldbalanceorg": FieldRef.ORIGIN_BALANCE_BEFORE,
    "newbalanceOrig": FieldRef.ORIGIN_BALANCE_AFTER,
    "newbalanceorig": FieldRef.ORIGIN_BALANCE_AFTER,
    "oldbalanceDest": FieldRef.DEST_BALANCE_BEFORE,
    "oldbalancedest": FieldRef.DEST_BALANCE_BEFORE,
    "newbalanceDest": FieldRef.DEST_BALANCE_AFTER,
    "newbalancedest": FieldRef.DEST_BALANCE_AFTER,
})
