"""storyloom — branching interactive fiction on a small local language model."""
