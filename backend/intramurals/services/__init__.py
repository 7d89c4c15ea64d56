"""
Services Layer

Bracket engine services that:
- Accept plain Tournament/Match/Team objects
- Return domain outputs (templates, matches, effects, layouts)
- Do NOT depend on HTTP request/response objects
- Leave persistence to BracketStore
"""
