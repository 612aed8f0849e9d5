"""Order execution: exchange filters, quantity quantization, order state machine, pending orders."""
