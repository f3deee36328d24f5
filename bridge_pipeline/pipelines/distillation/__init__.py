"""Stage 3: Distillation.

Turns collected content into structured porting records via an LLM.
"""
