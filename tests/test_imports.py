# test_imports.py
import sys
print("Python path:", sys.path)

try:
    import credit_gateway
    print("✅ credit_gateway imported successfully")
    print("Module location:", list(credit_gateway.__path__))
except ImportError as e:
    print("❌ Failed to import credit_gateway:", e)

try:
    from credit_gateway.core.orchestrator import GatewayOrchestrator
    print("✅ GatewayOrchestrator imported successfully")
except ImportError as e:
    print("❌ Failed to import GatewayOrchestrator:", e)
