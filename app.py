import aws_cdk as cdk
from config import get_config
from stacks.cert_plugin_stack import CertPluginStack

app = cdk.App()
config = get_config(app)

# =================================================================
# CLOUDFRONT SSL PLUGIN STACK (China region)
# =================================================================
# Issues IAM server certificates through ACME and binds them to CloudFront.
env = cdk.Environment(account=config.account, region=config.region)
CertPluginStack(
    app, f"CloudFrontSslPlugin-{config.name}",
    config=config,
    env=env
)

print(f"📜 Certificates for: {config.domain_names} (renewal every {config.renew_interval_days} days)")

app.synth()
