"""Azure resource kinds known to the AzureProvider.

Each entry describes how a declaration of that kind maps onto the generic
ARM resources API: where the resource lives (resource-id template), which
API version to call, which top-level fields can be changed in place, and
which output attributes dependents may reference.

The catalog covers the PaaS topology this tool was built for: a resource
group, a VNet with an app subnet and a private-endpoint subnet, a private
DNS zone linked to the VNet, a Text Analytics account reached through a
private endpoint, an App Service plan and web app with VNet integration and
source-control deployment, and a consumption budget with alerts.

ID TEMPLATES:
Placeholders are filled from the declaration's config first, then from
deployment settings (``subscriptionId``, ``resourceGroupName``). Config
fields used as placeholders address the resource and are not sent in the
request body.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .provider import COMMON_OUTPUTS, KindSchema

RESOURCE_GROUP_SCOPE = "/subscriptions/{subscriptionId}/resourceGroups/{resourceGroupName}"

# Top-level ARM envelope fields; everything else goes under "properties"
ENVELOPE_FIELDS: frozenset[str] = frozenset({"location", "tags", "sku", "kind", "identity"})

_PLACEHOLDER = re.compile(r"\{([A-Za-z]+)\}")


@dataclass(frozen=True)
class AzureKind:
    """How one ARM resource type is addressed and diffed.

    Attributes:
        kind: ARM resource type, used as the declaration kind.
        api_version: ARM API version for all calls on this type.
        id_template: Resource id with ``{placeholders}``.
        mutable_fields: Fields updatable with a PUT on the existing resource.
        immutable_fields: Fields whose change requires a new resource.
        outputs: Attributes exposed to dependents besides ``id`` and ``name``.
        list_actions: POST actions invoked after provisioning whose JSON
            response is merged into the outputs (e.g. ``listKeys``).
        sensitive_outputs: Outputs that carry secrets.
    """

    kind: str
    api_version: str
    id_template: str
    mutable_fields: frozenset[str] = frozenset()
    immutable_fields: frozenset[str] = frozenset()
    outputs: frozenset[str] = frozenset()
    list_actions: tuple[str, ...] = field(default_factory=tuple)
    sensitive_outputs: frozenset[str] = frozenset()

    @property
    def address_fields(self) -> frozenset[str]:
        """Config fields consumed by the id template."""
        return frozenset(_PLACEHOLDER.findall(self.id_template))

    def schema(self) -> KindSchema:
        return KindSchema(
            kind=self.kind,
            mutable_fields=self.mutable_fields,
            # Anything that addresses the resource can never change in place
            immutable_fields=self.immutable_fields | self.address_fields,
            outputs=COMMON_OUTPUTS | self.outputs | {"type", "location"},
            sensitive_outputs=self.sensitive_outputs,
        )


def _fields(*names: str) -> frozenset[str]:
    return frozenset(names)


AZURE_KINDS: tuple[AzureKind, ...] = (
    AzureKind(
        kind="Microsoft.Resources/resourceGroups",
        api_version="2022-09-01",
        id_template="/subscriptions/{subscriptionId}/resourceGroups/{name}",
        mutable_fields=_fields("tags"),
        immutable_fields=_fields("location"),
    ),
    AzureKind(
        kind="Microsoft.Network/virtualNetworks",
        api_version="2023-09-01",
        id_template=RESOURCE_GROUP_SCOPE + "/providers/Microsoft.Network/virtualNetworks/{name}",
        mutable_fields=_fields("addressSpace", "dhcpOptions", "enableDdosProtection", "tags"),
        immutable_fields=_fields("location"),
        outputs=_fields("addressSpace", "resourceGuid"),
    ),
    AzureKind(
        kind="Microsoft.Network/virtualNetworks/subnets",
        api_version="2023-09-01",
        id_template=(
            RESOURCE_GROUP_SCOPE
            + "/providers/Microsoft.Network/virtualNetworks/{virtualNetworkName}/subnets/{name}"
        ),
        mutable_fields=_fields(
            "addressPrefix",
            "addressPrefixes",
            "delegations",
            "networkSecurityGroup",
            "routeTable",
            "serviceEndpoints",
            "privateEndpointNetworkPolicies",
            "privateLinkServiceNetworkPolicies",
        ),
        outputs=_fields("addressPrefix"),
    ),
    AzureKind(
        kind="Microsoft.Network/privateDnsZones",
        api_version="2020-06-01",
        id_template=RESOURCE_GROUP_SCOPE + "/providers/Microsoft.Network/privateDnsZones/{name}",
        mutable_fields=_fields("tags"),
        immutable_fields=_fields("location"),
    ),
    AzureKind(
        kind="Microsoft.Network/privateDnsZones/virtualNetworkLinks",
        api_version="2020-06-01",
        id_template=(
            RESOURCE_GROUP_SCOPE
            + "/providers/Microsoft.Network/privateDnsZones/{privateZoneName}"
            + "/virtualNetworkLinks/{name}"
        ),
        mutable_fields=_fields("registrationEnabled", "tags"),
        immutable_fields=_fields("location", "virtualNetwork"),
    ),
    AzureKind(
        kind="Microsoft.CognitiveServices/accounts",
        api_version="2023-05-01",
        id_template=(
            RESOURCE_GROUP_SCOPE + "/providers/Microsoft.CognitiveServices/accounts/{name}"
        ),
        mutable_fields=_fields("sku", "tags", "identity", "publicNetworkAccess", "networkAcls"),
        immutable_fields=_fields("location", "kind", "customSubDomainName"),
        outputs=_fields("endpoint", "key1", "key2"),
        list_actions=("listKeys",),
        sensitive_outputs=_fields("key1", "key2"),
    ),
    AzureKind(
        kind="Microsoft.Network/privateEndpoints",
        api_version="2023-09-01",
        id_template=RESOURCE_GROUP_SCOPE + "/providers/Microsoft.Network/privateEndpoints/{name}",
        mutable_fields=_fields("tags", "customDnsConfigs"),
        immutable_fields=_fields("location", "subnet", "privateLinkServiceConnections"),
        outputs=_fields("networkInterfaces", "customDnsConfigs"),
    ),
    AzureKind(
        kind="Microsoft.Network/privateEndpoints/privateDnsZoneGroups",
        api_version="2023-09-01",
        id_template=(
            RESOURCE_GROUP_SCOPE
            + "/providers/Microsoft.Network/privateEndpoints/{privateEndpointName}"
            + "/privateDnsZoneGroups/{name}"
        ),
        mutable_fields=_fields("privateDnsZoneConfigs"),
    ),
    AzureKind(
        kind="Microsoft.Web/serverfarms",
        api_version="2022-09-01",
        id_template=RESOURCE_GROUP_SCOPE + "/providers/Microsoft.Web/serverfarms/{name}",
        mutable_fields=_fields("sku", "tags", "perSiteScaling", "maximumElasticWorkerCount"),
        immutable_fields=_fields("location", "kind", "reserved"),
    ),
    AzureKind(
        kind="Microsoft.Web/sites",
        api_version="2022-09-01",
        id_template=RESOURCE_GROUP_SCOPE + "/providers/Microsoft.Web/sites/{name}",
        mutable_fields=_fields("serverFarmId", "httpsOnly", "siteConfig", "tags", "identity"),
        immutable_fields=_fields("location", "kind"),
        outputs=_fields("defaultHostName", "outboundIpAddresses"),
    ),
    AzureKind(
        kind="Microsoft.Web/sites/networkConfig",
        api_version="2022-09-01",
        id_template=(
            RESOURCE_GROUP_SCOPE
            + "/providers/Microsoft.Web/sites/{siteName}/networkConfig/virtualNetwork"
        ),
        mutable_fields=_fields("subnetResourceId", "swiftSupported"),
    ),
    AzureKind(
        kind="Microsoft.Web/sites/sourcecontrols",
        api_version="2022-09-01",
        id_template=(
            RESOURCE_GROUP_SCOPE + "/providers/Microsoft.Web/sites/{siteName}/sourcecontrols/web"
        ),
        mutable_fields=_fields(
            "repoUrl",
            "branch",
            "isManualIntegration",
            "deploymentRollbackEnabled",
            "isGitHubAction",
            "isMercurial",
        ),
    ),
    AzureKind(
        kind="Microsoft.Consumption/budgets",
        api_version="2023-05-01",
        id_template=(
            "/subscriptions/{subscriptionId}/providers/Microsoft.Consumption/budgets/{name}"
        ),
        mutable_fields=_fields("amount", "timePeriod", "notifications", "filter"),
        immutable_fields=_fields("category", "timeGrain"),
    ),
)


def get_catalog() -> dict[str, AzureKind]:
    """Catalog keyed by ARM resource type."""
    return {entry.kind: entry for entry in AZURE_KINDS}
