from marketplace.services.billing import BillingGateway


def get_gateway() -> BillingGateway:
    # в тестах подменяется через app.dependency_overrides
    return BillingGateway.from_config()
