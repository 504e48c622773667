"""
Decision acquisition.

Turns market context into a trading Intent, either with one prompt (passive)
or through a bounded tool-calling loop (agentic). The model only proposes;
the risk gate and order router remain the hard authority.
"""
