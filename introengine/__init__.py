"""
IntroEngine package: opportunity inference and scoring over a user's network.

  network_store        SQLite adapter, every query scoped by user_id
  graph_engine         in-memory network graph, name/domain normalization
  icp_matcher          company fit against the user's ICP
  path_finder          DIRECT / SECOND_LEVEL / INFERRED path discovery
  relationship_engine  intro opportunity upsert and reconciliation
  outbound_engine      OUTBOUND opportunities for targets with no warm path
  opportunity_scoring  four sub-scores and the composite
  followup_engine      drafts for stale opportunities
  weekly_advisor       weekly metrics and advisor report per account
  opportunity_actions  user-initiated status changes and listings
  status               opportunity types and the status machine
  completion           Anthropic completion service
  enrichment           industry / size enrichment of targets
  drafting             outreach copy for new opportunities
"""

__version__ = "0.4.0"
