from amaranth.back import verilog

from missq.consts import MissState
from missq.mshr import MissTracker

import argparse
import os

from jinja2 import FileSystemLoader, Environment

missq_params = dict(
    n_threads=8,
    paddr_bits=32,
    line_bytes=64,
)


def generate_params_header(mq, output_dir, template_dir=None):
    if template_dir is None:
        template_dir = os.path.join(os.path.dirname(__file__), 'rtl')

    env = Environment(loader=FileSystemLoader(searchpath=template_dir))
    config = dict(
        mq=mq,
        states=list(MissState),
        state_bits=max(MissState).bit_length(),
    )

    template = env.get_template('missq_params.vh.tmpl')
    output = template.render(config)

    with open(os.path.join(output_dir, 'missq_params.vh'), 'w') as fout:
        fout.write(output)
        fout.write('\n')


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description='Miss queue Verilog build')
    parser.add_argument('--threads',
                        type=int,
                        help='Number of hardware threads',
                        default=missq_params['n_threads'])
    parser.add_argument('--paddr-bits',
                        type=int,
                        help='Physical address width',
                        default=missq_params['paddr_bits'])
    parser.add_argument('--line-bytes',
                        type=int,
                        help='Cache line size',
                        default=missq_params['line_bytes'])
    parser.add_argument('--name',
                        type=str,
                        help='Top module name',
                        default='missq')
    parser.add_argument('-o',
                        '--output-dir',
                        type=str,
                        help='Output directory',
                        default='build')
    args = parser.parse_args()

    params = dict(missq_params,
                  n_threads=args.threads,
                  paddr_bits=args.paddr_bits,
                  line_bytes=args.line_bytes)

    top = MissTracker(params)

    os.makedirs(args.output_dir, exist_ok=True)

    with open(os.path.join(args.output_dir, f'{args.name}.v'), 'w') as f:
        f.write(verilog.convert(top, name=args.name, ports=top.ports()))

    generate_params_header(top, args.output_dir)
