"""Custodial parent wallet boundary."""

from ephemeralpay.custodian.adapter import CustodianAdapter
from ephemeralpay.custodian.handle import CustodianHandle, HttpCustodianSession

__all__ = ["CustodianAdapter", "CustodianHandle", "HttpCustodianSession"]
