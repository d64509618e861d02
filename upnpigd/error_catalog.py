"""UPnP IGD error code descriptions."""

from __future__ import annotations

UPNP_ERROR_CODES: dict[int, str] = {
    402: "402 Invalid Args",
    501: "501 Action Failed",
    713: "713 SpecifiedArrayIndexInvalid: The specified array index is out of bounds",
    714: "714 NoSuchEntryInArray: The specified value does not exist in the array",
    715: "715 WildCardNotPermittedInSrcIP: The source IP address cannot be wild-carded",
    716: "716 WildCardNotPermittedInExtPort: The external port cannot be wild-carded",
    718: (
        "718 ConflictInMappingEntry: The port mapping entry specified conflicts "
        "with a mapping assigned previously to another client"
    ),
    724: "724 SamePortValuesRequired: Internal and External port values must be the same",
    725: (
        "725 OnlyPermanentLeasesSupported: The NAT implementation only supports "
        "permanent lease times on port mappings"
    ),
    726: (
        "726 RemoteHostOnlySupportsWildcard: RemoteHost must be a wildcard and "
        "cannot be a specific IP address or DNS name"
    ),
    727: (
        "727 ExternalPortOnlySupportsWildcard: ExternalPort must be a wildcard "
        "and cannot be a specific port value"
    ),
}


def describe(code: int) -> str:
    """Return the descriptive text for a UPnP error code."""
    return UPNP_ERROR_CODES.get(code, f"Unknown Error: {code}")
