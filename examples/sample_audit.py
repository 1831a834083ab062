"""Sample audit script demonstrating programmatic usage."""
from evm_lens.evm.layout import StorageLayout, StorageVariable
from evm_lens.evm.opcodes import OpCode
from evm_lens.pipeline import analyze_bytecode
from evm_lens.report.generator import ReportGenerator


def demo_with_synthetic_contract():
    """Analyze a transfer whose amount is scaled by an undisclosed fee slot."""
    # SSTORE(3, SLOAD(2) * SLOAD(1))
    code = bytes([
        OpCode.PUSH1, 0x01, OpCode.SLOAD,
        OpCode.PUSH1, 0x02, OpCode.SLOAD,
        OpCode.MUL,
        OpCode.PUSH1, 0x03, OpCode.SSTORE,
        OpCode.STOP,
    ])
    layout = StorageLayout([StorageVariable(name="rate", slot=1, public=True), StorageVariable(name="_fee", slot=2)])
    contract = analyze_bytecode(code, contract_id="SyntheticToken", layout=layout)
    print(f"Decoded {len(contract.instructions)} instructions, risk score {contract.risk_score}")
    print(ReportGenerator(contract).to_json())


if __name__ == "__main__":
    demo_with_synthetic_contract()
