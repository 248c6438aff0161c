"""Tests for tunnel exposure."""

from honsefarm_operator.models import CloudflaredIngressRule, CloudflaredSpec, HonseFarmClusterSpec
from honsefarm_operator.resources import ResourceKind
from honsefarm_operator.tunnel import render_config, render_tunnel, resolve_backend


class TestResolveBackend:
    """Test cases for ingress backends."""

    def test_explicit_service(self):
        """Test a rule naming a service."""
        rule = CloudflaredIngressRule(
            hostname="grafana.honse.farm",
            service_name="grafana",
            service_namespace="monitoring",
            service_port=3000,
        )
        assert resolve_backend(rule, "honsefarm") == (
            "http://grafana.monitoring.svc.cluster.local:3000"
        )

    def test_component_rule(self):
        """Test a rule referencing an operator component."""
        rule = CloudflaredIngressRule(hostname="eu.cdn.honse.farm", component="shard", shard_name="eu")
        assert resolve_backend(rule, "honsefarm") == (
            "http://shard-eu-svc.honsefarm.svc.cluster.local:5002"
        )

    def test_incomplete_rule(self):
        """Test that rules without a port or namespace resolve to nothing."""
        assert resolve_backend(CloudflaredIngressRule(service_name="x"), "honsefarm") is None
        assert resolve_backend(CloudflaredIngressRule(component="shard"), "honsefarm") is None


class TestRenderTunnel:
    """Test cases for tunnel resources."""

    def test_config_document(self):
        """Test the line-oriented config with skipped and special rules."""
        cf = CloudflaredSpec(
            tunnel_id="tunnel-1",
            ingress=[
                CloudflaredIngressRule(hostname="api.honse.farm", component="server"),
                CloudflaredIngressRule(hostname="broken.honse.farm"),
                CloudflaredIngressRule(special_service="http_status:404"),
            ],
        )
        assert render_config(cf, "honsefarm").splitlines() == [
            "tunnel: tunnel-1",
            "credentials-file: /etc/cloudflared/creds/credentials.json",
            "ingress:",
            "  - hostname: api.honse.farm",
            "    service: http://server-svc.honsefarm.svc.cluster.local:5000",
            "  - service: http_status:404",
        ]

    def test_resources(self):
        """Test the config map and deployment."""
        spec = HonseFarmClusterSpec.model_validate(
            {"cloudflared": {"tunnelId": "t", "extraArgs": ["--loglevel", "debug"]}}
        )
        config_map, deployment = render_tunnel(spec, "cloudflared:latest")

        assert config_map.kind == ResourceKind.CONFIG_MAP
        assert config_map.name == "cloudflared-config"
        container = deployment.body.spec.template.spec.containers[0]
        assert container.args == ["tunnel", "run", "--loglevel", "debug"]
        assert container.image == "cloudflared:latest"
        volumes = {v.name: v for v in deployment.body.spec.template.spec.volumes}
        assert volumes["credentials"].secret.secret_name == "cloudflared-credentials"

    def test_disabled(self):
        """Test that a disabled or absent tunnel renders nothing."""
        assert render_tunnel(HonseFarmClusterSpec(), "img") == []
        spec = HonseFarmClusterSpec.model_validate({"cloudflared": {"enabled": False}})
        assert render_tunnel(spec, "img") == []
