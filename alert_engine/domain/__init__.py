"""Domain models: observations, rules, expression trees, alert instances."""
