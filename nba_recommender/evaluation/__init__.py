"""
Evaluation pipeline: condition filtering, scoring, ranking.

Modules
-------
conditions : ConditionEvaluator + predicate kinds (static, expression tree,
             external decision).  Per-rule failures are absorbed here.
modifiers  : ModifierRegistry + built-in scoring modifiers.
scoring    : ScoringEngine — base score plus named modifiers, reason text.
ranker     : rank() — deterministic (score, priority tier, rule id) ordering.
pipeline   : EvaluationPipeline — snapshot → filter → score → rank → cache →
             materialize, single and batched.
"""
