import os
from typing import Any

from aws_cdk import (
    Stack,
    Aws,
    BundlingOptions,
    CfnOutput,
    Duration,
    RemovalPolicy,
    aws_apigateway as apigw,
    aws_events as events,
    aws_events_targets as targets,
    aws_iam as iam,
    aws_lambda as lambda_,
    aws_s3 as s3,
    aws_sns as sns,
    aws_sns_subscriptions as subscriptions,
)
from constructs import Construct

CERT_BOT_CODE = os.path.join(os.path.dirname(__file__), "..", "lambda", "cert_bot")

LIFECYCLE_STATUSES = ["CREATE_COMPLETE", "UPDATE_COMPLETE"]

DESCRIPTION = "(SO8156-cn) - China CloudFront SSL Plugin"


class CertPluginStack(Stack):
    """
    Deploys the certificate automation for CloudFront in the China regions:
    1. SNS topic notifying the operator of every issuance outcome.
    2. S3 bucket keeping certificates, renewal metadata and the ACME account key.
    3. Certificate function, triggered after each deployment and every N days.
    4. Management REST API (IAM authorization) to list and delete certificates.
    """
    def __init__(self, scope: Construct, construct_id: str, config: Any, **kwargs) -> None:
        kwargs.setdefault("description", DESCRIPTION)
        super().__init__(scope, construct_id, **kwargs)

        # =================================================================
        # 1. NOTIFICATIONS
        # =================================================================
        self.topic = sns.Topic(self, "Topic",
            display_name=f"{self.stack_name}-Issue-SSL-Notification"
        )
        self.topic.add_subscription(subscriptions.EmailSubscription(config.notify_email))

        # =================================================================
        # 2. CERTIFICATE BUCKET
        # =================================================================
        # Emptied and removed with the stack
        self.bucket = s3.Bucket(self, "CertBucket",
            encryption=s3.BucketEncryption.S3_MANAGED,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
            enforce_ssl=True,
            removal_policy=RemovalPolicy.DESTROY,
            auto_delete_objects=True
        )

        # =================================================================
        # 3. CERTIFICATE FUNCTION
        # =================================================================
        # One asset for every function: pip installs the ACME stack next to the handlers
        code = lambda_.Code.from_asset(CERT_BOT_CODE,
            bundling=BundlingOptions(
                image=lambda_.Runtime.PYTHON_3_12.bundling_image,
                command=[
                    "bash", "-c",
                    "pip install -r requirements.txt -t /asset-output && cp -au . /asset-output"
                ]
            )
        )

        environment = {
            "CERTBOT_BUCKET": self.bucket.bucket_name,
            "DOMAINS_LIST": config.domain_names,
            "DOMAINS_EMAIL": config.notify_email,
            "STACK_NAME": self.stack_name,
            "REGION": self.region,
            "TOPIC_ARN": self.topic.topic_arn,
            "MAX_DIST_ITEMS": "200",
            "DIST_PAGE_SIZE": "20",
            "RENEW_INTERVAL_DAYS": str(config.renew_interval_days),
        }
        if config.acme_directory_url:
            environment["ACME_DIRECTORY_URL"] = config.acme_directory_url

        self.cert_bot_fn = lambda_.Function(self, "CertBotFunction",
            runtime=lambda_.Runtime.PYTHON_3_12,
            handler="index.handler",
            code=code,
            description="Core Function for issuing certificates",
            memory_size=256,
            timeout=Duration.seconds(900),
            environment=environment
        )

        # =================================================================
        # 4. PERMISSIONS
        # =================================================================
        self.bucket.grant_read_write(self.cert_bot_fn)
        self.topic.grant_publish(self.cert_bot_fn)

        # List/Get calls without resource-level permissions
        self.cert_bot_fn.add_to_role_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=[
                "cloudfront:GetDistribution",
                "cloudfront:GetDistributionConfig",
                "cloudfront:ListDistributions",
                "cloudfront:UpdateDistribution",
                "iam:ListServerCertificates",
                "route53:GetChange",
                "route53:ListHostedZones",
            ],
            resources=["*"]
        ))
        self.cert_bot_fn.add_to_role_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=[
                "iam:GetServerCertificate",
                "iam:UploadServerCertificate",
                "iam:ListServerCertificateTags",
                "iam:TagServerCertificate",
                "iam:UntagServerCertificate",
            ],
            resources=[f"arn:{Aws.PARTITION}:iam::{Aws.ACCOUNT_ID}:server-certificate/*"]
        ))
        self.cert_bot_fn.add_to_role_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=["route53:ChangeResourceRecordSets", "route53:ListResourceRecordSets"],
            resources=[f"arn:{Aws.PARTITION}:route53:::hostedzone/*"]
        ))

        # =================================================================
        # 5. TRIGGERS
        # =================================================================
        # Issue right after the stack is created or updated
        lifecycle_rule = events.Rule(self, "CertCfnCreatedRule",
            description="Trigger certificate function after stack created or updated",
            event_pattern=events.EventPattern(
                source=["aws.cloudformation"],
                detail_type=["CloudFormation Stack Status Change"],
                detail={
                    "stack-id": [self.stack_id],
                    "status-details": {"status": LIFECYCLE_STATUSES}
                }
            )
        )
        lifecycle_rule.add_target(targets.LambdaFunction(self.cert_bot_fn))

        schedule_rule = events.Rule(self, "CertScheduledRule",
            description=f"Automatically trigger certificate function every {config.renew_interval_days} days",
            schedule=events.Schedule.rate(Duration.days(config.renew_interval_days))
        )
        schedule_rule.add_target(targets.LambdaFunction(self.cert_bot_fn))

        # =================================================================
        # 6. MANAGEMENT FUNCTIONS
        # =================================================================
        management_environment = {
            "STACK_NAME": self.stack_name,
            "REGION": self.region,
        }

        self.list_cert_fn = lambda_.Function(self, "ListCertFunction",
            runtime=lambda_.Runtime.PYTHON_3_12,
            handler="index.list_certificates_handler",
            code=code,
            description="API for list IAM certificates",
            timeout=Duration.seconds(20),
            environment=management_environment
        )
        self.list_cert_fn.add_to_role_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=["iam:ListServerCertificates"],
            resources=["*"]
        ))

        self.delete_cert_fn = lambda_.Function(self, "DeleteCertFunction",
            runtime=lambda_.Runtime.PYTHON_3_12,
            handler="index.delete_certificate_handler",
            code=code,
            description="API for delete IAM certificates",
            timeout=Duration.seconds(20),
            environment=management_environment
        )
        self.delete_cert_fn.add_to_role_policy(iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=["iam:DeleteServerCertificate"],
            resources=[f"arn:{Aws.PARTITION}:iam::{Aws.ACCOUNT_ID}:server-certificate/*"]
        ))

        # =================================================================
        # 7. MANAGEMENT API (IAM AUTH)
        # =================================================================
        self.api = apigw.RestApi(self, "SslCertManageAPI",
            rest_api_name=f"{self.stack_name}: SSL Cert Management API",
            description=f"{self.stack_name}: SSL Cert Management API",
            endpoint_configuration=apigw.EndpointConfiguration(types=[apigw.EndpointType.REGIONAL]),
            cloud_watch_role=True,
            default_cors_preflight_options=apigw.CorsOptions(
                allow_headers=["Content-Type", "X-Amz-Date", "Authorization", "X-Api-Key"],
                allow_methods=["POST", "OPTIONS"],
                allow_credentials=True,
                allow_origins=apigw.Cors.ALL_ORIGINS
            ),
            deploy_options=apigw.StageOptions(
                stage_name="prod",
                data_trace_enabled=True,
                logging_level=apigw.MethodLoggingLevel.INFO
            ),
            default_method_options=apigw.MethodOptions(
                authorization_type=apigw.AuthorizationType.IAM
            )
        )

        self.api.root.add_resource("list-ssl-cert").add_method(
            "GET", apigw.LambdaIntegration(self.list_cert_fn, proxy=True)
        )
        self.api.root.add_resource("delete-ssl-cert").add_method(
            "POST", apigw.LambdaIntegration(self.delete_cert_fn, proxy=True)
        )

        # =================================================================
        # 8. OUTPUTS
        # =================================================================
        CfnOutput(self, "S3BucketURL",
            value=f"https://{Aws.REGION}.console.amazonaws.cn/s3/buckets/{self.bucket.bucket_name}",
            description="Download SSL certification from S3 bucket"
        )
        CfnOutput(self, "ManagementApiURL",
            value=self.api.url,
            description="IAM SSL certificate management API (list-ssl-cert, delete-ssl-cert)"
        )
        CfnOutput(self, "CloudFrontConsole",
            value="https://console.amazonaws.cn/cloudfront",
            description="Check the IAM SSL certificate used by your CloudFront distributions"
        )
