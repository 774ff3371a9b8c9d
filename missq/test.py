from amaranth.sim import Simulator


def run_test(dut, bench, sync=False, vcd_file=None):
    sim = Simulator(dut)
    if sync:
        sim.add_clock(1e-6)
    sim.add_testbench(bench)

    if vcd_file is not None:
        with sim.write_vcd(vcd_file):
            sim.run()
    else:
        sim.run()
