from pymongo.database import Database


def platform_stats(db: Database) -> dict:
    """Global counters shown on the landing page and dashboards. Uncached."""
    return {
        "donorsCount": db["user"].count_documents({"userType": "donor", "isActive": True}),
        "acceptancesCount": db["donation"].count_documents({"status": "claimed"}),
        "activeDonationsCount": db["donation"].count_documents({"status": "available"}),
        "pendingRequestsCount": db["request"].count_documents({"status": "pending"}),
    }
